from __future__ import annotations

import logging
import re
from typing import Callable

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.schema import CreateSchema, DropSchema

from slotkit.core.config import settings

logger = logging.getLogger(__name__)

MAX_SCHEMA_NAME_LENGTH = 63

_SEARCH_PATH_RE = re.compile(r"-c\s*search_path=\S+")


def compact_test_run_id(test_run_id: str) -> str:
    return re.sub(r"[^a-z0-9]", "", test_run_id.lower())


def build_schema_name(test_run_id: str, prefix: str = "test") -> str:
    sanitized_prefix = re.sub(r"[^a-z0-9_]", "_", prefix.lower())
    candidate = f"{sanitized_prefix}_{compact_test_run_id(test_run_id)}"
    return candidate[:MAX_SCHEMA_NAME_LENGTH]


def build_schema_database_url(base_url: str, schema_name: str) -> str:
    url = make_url(base_url or settings.test_database_url)
    # No space after -c keeps libpq and psycopg option parsing in agreement.
    search_path = f"-csearch_path={schema_name},public"
    existing = str(url.query.get("options") or "").strip()
    if not existing:
        options = search_path
    elif _SEARCH_PATH_RE.search(existing):
        options = _SEARCH_PATH_RE.sub(search_path, existing)
    else:
        options = f"{existing} {search_path}"
    return url.update_query_dict({"options": options}).render_as_string(hide_password=False)


class SqlSchemaContext:
    def __init__(
        self,
        *,
        test_run_id: str,
        schema_prefix: str = "test",
        database_url: str | None = None,
        engine_factory: Callable[[str], Engine] = create_engine,
    ) -> None:
        self.test_run_id = test_run_id
        self.schema_name = build_schema_name(test_run_id, schema_prefix)
        self.base_database_url = database_url or settings.test_database_url
        self.schema_database_url = build_schema_database_url(self.base_database_url, self.schema_name)
        self._engine_factory = engine_factory

    def _execute(self, statement) -> None:
        engine = self._engine_factory(self.base_database_url)
        try:
            with engine.begin() as conn:
                conn.execute(statement)
        finally:
            engine.dispose()

    def setup(self) -> None:
        self._execute(CreateSchema(self.schema_name, if_not_exists=True))

    def teardown(self) -> None:
        self._execute(DropSchema(self.schema_name, cascade=True, if_exists=True))
        logger.info("Dropped schema %s", self.schema_name)


def teardown_slot_schema(test_run_id: str, schema_prefix: str) -> None:
    SqlSchemaContext(test_run_id=test_run_id, schema_prefix=schema_prefix).teardown()
