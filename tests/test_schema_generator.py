from __future__ import annotations

import json

from share_credits.schema_generator import generate_logical_schema, main, render_sql_ddl


def test_logical_schema_covers_models():
    schema = generate_logical_schema()

    assert set(schema) == {
        "share_credit_balances",
        "share_subscriptions",
        "share_reward_transactions",
        "share_credit_transactions",
        "share_notifications",
        "share_ledger",
    }
    subscriptions = schema["share_subscriptions"]
    assert subscriptions["primary_key"] == "user_id"
    assert subscriptions["properties"]["tier"]["type"] == "string"
    assert subscriptions["properties"]["tier"]["default"] == "free"
    assert subscriptions["properties"]["grace_period_end"]["nullable"] is True
    assert schema["share_reward_transactions"]["unique"] == ["source_completion_id"]
    assert schema["share_credit_transactions"]["unique"] == ["reference_id"]


def test_sql_ddl_has_unique_completion_constraint():
    ddl = render_sql_ddl(generate_logical_schema())

    assert 'CREATE TABLE IF NOT EXISTS "share_reward_transactions"' in ddl
    assert 'UNIQUE ("source_completion_id")' in ddl
    assert 'UNIQUE ("reference_id")' in ddl
    assert 'PRIMARY KEY ("user_id")' in ddl
    assert '"last_reset_period" TEXT NOT NULL' in ddl


def test_cli_nosql_output(capsys):
    main(["--backend", "nosql"])

    rendered = json.loads(capsys.readouterr().out)
    assert "share_credit_balances" in rendered
