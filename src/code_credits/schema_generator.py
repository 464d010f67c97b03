from __future__ import annotations

import argparse
import json
from typing import Any, Dict, List, Type

from .models.base import DBSerializableModel
from .models.execution import ExecutionRecord
from .models.ledger import LedgerEntry
from .models.promotion import AdminGrant, Promotion
from .models.subscription import Subscription
from .models.transaction import Transaction
from .models.user import UserAccount


MODEL_REGISTRY: List[Type[DBSerializableModel]] = [
    UserAccount,
    Subscription,
    ExecutionRecord,
    Transaction,
    Promotion,
    AdminGrant,
    LedgerEntry,
]


def generate_logical_schema() -> Dict[str, Any]:
    """
    Backend-agnostic schema for every persisted model, keyed by collection.
    The SQL and document renderers below both start from this.
    """
    return {model.collection_name: model.db_schema() for model in MODEL_REGISTRY}


def render_sql_ddl(schema: Dict[str, Any], dialect: str = "postgres") -> str:
    lines: List[str] = []
    for table_name, table in schema.items():
        props = table["properties"]
        pk = table.get("primary_key") or "id"
        columns: List[str] = []
        for field_name, meta in props.items():
            sql_type = _map_logical_to_sql(meta.get("type", "string"), dialect=dialect)
            nullable = "NOT NULL" if field_name in table.get("required", []) else "NULL"
            columns.append(f'    "{field_name}" {sql_type} {nullable}')
        columns.append(f'    PRIMARY KEY ("{pk}")')
        lines.append(
            f'CREATE TABLE IF NOT EXISTS "{table_name}" (\n' + ",\n".join(columns) + "\n);\n"
        )
    return "\n".join(lines)


def render_nosql_schema(schema: Dict[str, Any]) -> str:
    """JSON validator documents for MongoDB collections."""
    return json.dumps(schema, indent=2, default=str)


def _map_logical_to_sql(logical_type: str, dialect: str) -> str:
    logical_type = logical_type.lower()
    if logical_type == "integer":
        return "BIGINT"
    if logical_type == "number":
        return "DOUBLE PRECISION"
    if logical_type == "boolean":
        return "BOOLEAN"
    if logical_type in {"datetime", "date"}:
        return "TIMESTAMPTZ" if dialect == "postgres" else "TIMESTAMP"
    if logical_type in {"array", "object"}:
        return "JSONB" if dialect == "postgres" else "JSON"
    return "TEXT"


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Generate DB schemas for the code execution credit engine."
    )
    parser.add_argument("--backend", choices=["sql", "nosql"], required=True)
    parser.add_argument("--dialect", default="postgres", help="SQL dialect hint (postgres, mysql).")
    args = parser.parse_args()

    schema = generate_logical_schema()
    if args.backend == "sql":
        print(render_sql_ddl(schema, dialect=args.dialect))
    else:
        print(render_nosql_schema(schema))


if __name__ == "__main__":
    main()
