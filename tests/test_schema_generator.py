from __future__ import annotations

import json

from credit_ledger.schema_generator import (
    generate_logical_schema,
    main,
    render_nosql_schema,
    render_sql_ddl,
)


def test_logical_schema_covers_ledger_collections():
    schema = generate_logical_schema()

    assert set(schema) == {
        "credit_accounts",
        "credit_batches",
        "credit_reservations",
        "credit_transactions",
        "credit_notifications",
        "credit_ledger",
    }
    batches = schema["credit_batches"]
    assert batches["properties"]["remaining"]["type"] == "integer"
    assert batches["properties"]["expires_at"]["type"] == "datetime"
    assert batches["properties"]["source"]["type"] == "string"
    assert "account_id" in batches["required"]
    assert ["account_id", "expired", "expires_at"] in batches["indexes"]


def test_sql_ddl_includes_tables_and_indexes():
    ddl = render_sql_ddl(generate_logical_schema())

    assert 'CREATE TABLE IF NOT EXISTS "credit_transactions"' in ddl
    assert '"balance_after" BIGINT NOT NULL' in ddl
    assert '"created_at" TIMESTAMPTZ NULL' in ddl
    assert '"metadata" JSONB NULL' in ddl
    assert 'ON "credit_transactions" ("account_id", "sequence")' in ddl


def test_nosql_schema_is_json():
    rendered = render_nosql_schema(generate_logical_schema())
    assert json.loads(rendered)["credit_reservations"]["primary_key"] == "id"


def test_cli_prints_schema(capsys):
    main(["--backend", "nosql"])
    out = capsys.readouterr().out
    assert "credit_batches" in json.loads(out)
