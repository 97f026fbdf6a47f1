"""Tests for gateway config reconciliation."""

import json
import stat
from pathlib import Path

import pytest
from structlog.testing import capture_logs

from src.sandbox import providers
from src.sandbox.reconcile import (
    RULES,
    apply_ai_gateway_model,
    apply_discord,
    apply_gateway_defaults,
    apply_openrouter,
    apply_slack,
    apply_telegram,
    dump_config,
    load_config,
    reconcile,
    reconcile_file,
    write_config,
)

FULL_ENV = {
    "OPENCLAW_GATEWAY_TOKEN": "gw-token",
    "OPENCLAW_DEV_MODE": "true",
    "CF_AI_GATEWAY_MODEL": "openai/gpt-4o",
    "CF_AI_GATEWAY_ACCOUNT_ID": "acct",
    "CF_AI_GATEWAY_GATEWAY_ID": "gw",
    "CLOUDFLARE_AI_GATEWAY_API_KEY": "cf-key",
    "OPENROUTER_API_KEY": "or-key",
    "ANTHROPIC_API_KEY": "sk-ant",
    "TELEGRAM_BOT_TOKEN": "tg",
    "TELEGRAM_DM_ALLOW_FROM": "111, 222",
    "DISCORD_BOT_TOKEN": "dc",
    "DISCORD_DM_POLICY": "open",
    "SLACK_BOT_TOKEN": "xoxb",
    "SLACK_APP_TOKEN": "xapp",
}

STALE_BACKUP = {
    "gateway": {"port": 1234, "mode": "remote", "trustedProxies": [], "auth": {"token": "old"}},
    "channels": {"telegram": {"botToken": "old", "legacyKey": True, "streamMode": "x"}},
    "models": {
        "providers": {
            "anthropic": {"apiKey": "direct"},
            "openai": {"apiKey": "direct"},
            "custom": {"apiKey": "keep-me"},
        }
    },
    "agents": {"defaults": {"model": {"primary": "anthropic/claude"}, "workspace": "/root/clawd"}},
    "skills": {"entries": {"weather": {"enabled": True}}},
}


class TestGatewayRules:
    """Tests for the fixed gateway section."""

    def test_empty_document_gets_sections_and_gateway_defaults(self):
        doc = reconcile({}, {})

        assert doc == {
            "gateway": {"port": 18789, "mode": "local", "trustedProxies": ["10.1.0.0"]},
            "channels": {},
        }

    def test_gateway_defaults_overwrite_restored_values(self):
        doc = apply_gateway_defaults({"gateway": {"port": 1, "mode": "remote", "bind": "lan"}}, {})

        assert doc["gateway"]["port"] == 18789
        assert doc["gateway"]["mode"] == "local"
        assert doc["gateway"]["bind"] == "lan"

    def test_non_object_parent_is_replaced(self):
        doc = reconcile({"gateway": "broken", "channels": None}, {"OPENCLAW_GATEWAY_TOKEN": "t"})

        assert doc["gateway"]["auth"] == {"token": "t"}
        assert doc["channels"] == {}

    def test_token_is_left_alone_when_env_missing(self):
        doc = reconcile({"gateway": {"auth": {"token": "kept"}}}, {})

        assert doc["gateway"]["auth"]["token"] == "kept"

    def test_token_from_env_overwrites(self):
        backup = {"gateway": {"auth": {"token": "old", "mode": "token"}}}

        doc = reconcile(backup, {"OPENCLAW_GATEWAY_TOKEN": "new"})

        assert doc["gateway"]["auth"] == {"token": "new", "mode": "token"}

    @pytest.mark.parametrize("value", ["false", "1", "TRUE", ""])
    def test_dev_mode_requires_literal_true(self, value: str):
        doc = reconcile({}, {"OPENCLAW_DEV_MODE": value})

        assert "controlUi" not in doc["gateway"]

    def test_dev_mode_enables_insecure_auth(self):
        doc = reconcile({}, {"OPENCLAW_DEV_MODE": "true"})

        assert doc["gateway"]["controlUi"] == {"allowInsecureAuth": True}


class TestAiGatewayModel:
    """Tests for the CF_AI_GATEWAY_MODEL override."""

    def test_routes_through_named_gateway(self):
        env = {
            "CF_AI_GATEWAY_MODEL": "anthropic/claude-sonnet-4-5",
            "CF_AI_GATEWAY_ACCOUNT_ID": "acct",
            "CF_AI_GATEWAY_GATEWAY_ID": "gw",
            "CLOUDFLARE_AI_GATEWAY_API_KEY": "key",
        }

        doc = apply_ai_gateway_model({}, env)

        provider = doc["models"]["providers"]["cf-ai-gw-anthropic"]
        assert provider["baseUrl"] == "https://gateway.ai.cloudflare.com/v1/acct/gw/anthropic"
        assert provider["api"] == "anthropic-messages"
        assert provider["apiKey"] == "key"
        assert provider["models"] == [
            {
                "id": "claude-sonnet-4-5",
                "name": "claude-sonnet-4-5",
                "contextWindow": 131072,
                "maxTokens": 8192,
            }
        ]
        assert doc["agents"]["defaults"]["model"] == {
            "primary": "cf-ai-gw-anthropic/claude-sonnet-4-5"
        }

    def test_workers_ai_splits_on_first_slash_and_appends_v1(self):
        env = {
            "CF_AI_GATEWAY_MODEL": "workers-ai/@cf/meta/llama-3.3-70b",
            "CF_AI_GATEWAY_ACCOUNT_ID": "acct",
            "CF_AI_GATEWAY_GATEWAY_ID": "gw",
            "CLOUDFLARE_AI_GATEWAY_API_KEY": "key",
        }

        doc = apply_ai_gateway_model({}, env)

        provider = doc["models"]["providers"]["cf-ai-gw-workers-ai"]
        assert provider["baseUrl"] == "https://gateway.ai.cloudflare.com/v1/acct/gw/workers-ai/v1"
        assert provider["api"] == "openai-completions"
        assert provider["models"][0]["id"] == "@cf/meta/llama-3.3-70b"

    def test_workers_ai_direct_with_account_id(self):
        env = {
            "CF_AI_GATEWAY_MODEL": "workers-ai/@cf/meta/llama-3.3-70b",
            "CF_ACCOUNT_ID": "acct-direct",
            "CLOUDFLARE_AI_GATEWAY_API_KEY": "key",
        }

        doc = apply_ai_gateway_model({}, env)

        assert (
            doc["models"]["providers"]["cf-ai-gw-workers-ai"]["baseUrl"]
            == "https://api.cloudflare.com/client/v4/accounts/acct-direct/ai/v1"
        )

    def test_missing_ids_warns_once_and_changes_nothing(self):
        env = {"CF_AI_GATEWAY_MODEL": "workers-ai/@cf/meta/llama-3.3-70b"}

        with capture_logs() as logs:
            doc = reconcile({}, env)

        warnings = [entry for entry in logs if entry["log_level"] == "warning"]
        assert len(warnings) == 1
        assert warnings[0]["event"] == "reconcile.ai_gateway_model_incomplete"
        assert "models" not in doc
        assert "agents" not in doc
        assert doc == reconcile({}, {})

    def test_missing_api_key_warns(self):
        env = {
            "CF_AI_GATEWAY_MODEL": "openai/gpt-4o",
            "CF_AI_GATEWAY_ACCOUNT_ID": "acct",
            "CF_AI_GATEWAY_GATEWAY_ID": "gw",
        }

        with capture_logs() as logs:
            doc = apply_ai_gateway_model({"models": {"providers": {}}}, env)

        assert doc == {"models": {"providers": {}}}
        assert [entry["event"] for entry in logs] == ["reconcile.ai_gateway_model_incomplete"]

    @pytest.mark.parametrize("value", ["no-slash", "/model", "provider/"])
    def test_malformed_reference_warns(self, value: str):
        with capture_logs() as logs:
            doc = apply_ai_gateway_model({}, {"CF_AI_GATEWAY_MODEL": value})

        assert doc == {}
        assert logs[0]["event"] == "reconcile.ai_gateway_model_invalid"


class TestOpenRouter:
    """Tests for OpenRouter registration."""

    def test_removes_direct_providers_and_keeps_others(self):
        doc = apply_openrouter(STALE_BACKUP, {"OPENROUTER_API_KEY": "or-key"})

        table = doc["models"]["providers"]
        assert "anthropic" not in table
        assert "openai" not in table
        assert table["custom"] == {"apiKey": "keep-me"}
        assert table["openrouter"]["baseUrl"] == "https://openrouter.ai/api/v1"
        assert table["openrouter"]["apiKey"] == "or-key"
        assert table["openrouter"]["api"] == "openai-completions"

    def test_catalog_is_complete_and_ordered(self):
        doc = apply_openrouter({}, {"OPENROUTER_API_KEY": "or-key"})

        models = doc["models"]["providers"]["openrouter"]["models"]
        assert len(models) == len(providers.OPENROUTER_MODELS) == 40
        assert models[0] == {
            "id": "openrouter/free",
            "name": "auto-free",
            "contextWindow": 200000,
            "maxTokens": 8192,
        }
        assert models[1]["maxTokens"] == 131000
        assert models[-1]["id"] == "openai/gpt-5.2-pro"
        assert len({m["id"] for m in models}) == len(models)

    def test_default_model_fallback(self):
        doc = apply_openrouter({}, {"OPENROUTER_API_KEY": "k"})

        assert doc["agents"]["defaults"]["model"] == {
            "primary": "openrouter/deepseek/deepseek-v3.2"
        }

    def test_default_model_from_env_and_other_defaults_kept(self):
        env = {"OPENROUTER_API_KEY": "k", "DEFAULT_MODEL": "openrouter/z-ai/glm-5"}

        doc = apply_openrouter(STALE_BACKUP, env)

        assert doc["agents"]["defaults"]["model"] == {"primary": "openrouter/z-ai/glm-5"}
        assert doc["agents"]["defaults"]["workspace"] == "/root/clawd"

    def test_overrides_ai_gateway_default_model(self):
        doc = reconcile({}, FULL_ENV)

        assert doc["agents"]["defaults"]["model"]["primary"] == "openrouter/deepseek/deepseek-v3.2"
        assert "cf-ai-gw-openai" in doc["models"]["providers"]

    def test_no_direct_providers_even_with_direct_keys(self):
        env = {"OPENROUTER_API_KEY": "k", "ANTHROPIC_API_KEY": "a", "OPENAI_API_KEY": "o"}

        doc = reconcile(STALE_BACKUP, env)

        assert not {"anthropic", "openai"} & set(doc["models"]["providers"])


class TestChannels:
    """Tests for channel replacement rules."""

    def test_telegram_open_policy_scenario(self):
        doc = reconcile({}, {"TELEGRAM_BOT_TOKEN": "abc", "TELEGRAM_DM_POLICY": "open"})

        assert doc["channels"]["telegram"] == {
            "botToken": "abc",
            "enabled": True,
            "dmPolicy": "open",
            "allowFrom": ["*"],
        }

    def test_telegram_defaults_to_pairing_without_allow_from(self):
        doc = apply_telegram({"channels": {}}, {"TELEGRAM_BOT_TOKEN": "abc"})

        assert doc["channels"]["telegram"] == {
            "botToken": "abc",
            "enabled": True,
            "dmPolicy": "pairing",
        }

    def test_telegram_allow_list(self):
        doc = apply_telegram(
            {"channels": {}},
            {
                "TELEGRAM_BOT_TOKEN": "abc",
                "TELEGRAM_DM_POLICY": "allowlist",
                "TELEGRAM_DM_ALLOW_FROM": "123, 456,,",
            },
        )

        assert doc["channels"]["telegram"]["allowFrom"] == ["123", "456"]
        assert doc["channels"]["telegram"]["dmPolicy"] == "allowlist"

    def test_telegram_replaces_stale_keys(self):
        doc = reconcile(STALE_BACKUP, {"TELEGRAM_BOT_TOKEN": "new"})

        assert doc["channels"]["telegram"] == {
            "botToken": "new",
            "enabled": True,
            "dmPolicy": "pairing",
        }

    def test_channel_without_token_keeps_existing(self):
        doc = reconcile(STALE_BACKUP, {})

        assert doc["channels"]["telegram"] == STALE_BACKUP["channels"]["telegram"]

    def test_discord_nested_dm(self):
        env = {"DISCORD_BOT_TOKEN": "d", "DISCORD_DM_POLICY": "open"}

        doc = apply_discord({"channels": {}}, env)

        assert doc["channels"]["discord"] == {
            "token": "d",
            "enabled": True,
            "dm": {"policy": "open", "allowFrom": ["*"]},
        }

    def test_discord_default_policy(self):
        doc = apply_discord({"channels": {}}, {"DISCORD_BOT_TOKEN": "d"})

        assert doc["channels"]["discord"]["dm"] == {"policy": "pairing"}

    def test_discord_allow_list(self):
        env = {
            "DISCORD_BOT_TOKEN": "d",
            "DISCORD_DM_POLICY": "allowlist",
            "DISCORD_DM_ALLOW_FROM": "u1,u2",
        }

        doc = apply_discord({"channels": {}}, env)

        dm = doc["channels"]["discord"]["dm"]
        assert dm == {"policy": "allowlist", "allowFrom": ["u1", "u2"]}

    def test_slack_requires_both_tokens(self):
        assert apply_slack({"channels": {}}, {"SLACK_BOT_TOKEN": "b"}) == {"channels": {}}

        doc = apply_slack({"channels": {}}, {"SLACK_BOT_TOKEN": "b", "SLACK_APP_TOKEN": "a"})

        assert doc["channels"]["slack"] == {"botToken": "b", "appToken": "a", "enabled": True}


class TestReconcileProperties:
    """Whole-pipeline properties."""

    def test_input_is_not_mutated(self):
        original = json.loads(json.dumps(STALE_BACKUP))

        reconcile(STALE_BACKUP, FULL_ENV)

        assert STALE_BACKUP == original

    @pytest.mark.parametrize("start", [{}, STALE_BACKUP])
    def test_second_run_is_byte_identical(self, start: dict):
        first = reconcile(start, FULL_ENV)
        second = reconcile(json.loads(dump_config(first)), FULL_ENV)

        assert dump_config(second) == dump_config(first)

    def test_env_keys_win_over_restored_values(self):
        from_backup = reconcile(STALE_BACKUP, FULL_ENV)
        from_empty = reconcile({}, FULL_ENV)

        assert from_backup["gateway"] == from_empty["gateway"]
        assert from_backup["channels"] == from_empty["channels"]
        backup_model = from_backup["agents"]["defaults"]["model"]
        assert backup_model == from_empty["agents"]["defaults"]["model"]
        backup_providers = from_backup["models"]["providers"]
        empty_providers = from_empty["models"]["providers"]
        assert backup_providers["openrouter"] == empty_providers["openrouter"]

    def test_unrelated_sections_survive(self):
        doc = reconcile(STALE_BACKUP, FULL_ENV)

        assert doc["skills"] == STALE_BACKUP["skills"]

    def test_rule_order(self):
        names = [rule.__name__ for rule in RULES]

        assert names.index("apply_gateway_defaults") < names.index("apply_gateway_token")
        assert names.index("apply_ai_gateway_model") < names.index("apply_openrouter")
        assert names[-3:] == ["apply_telegram", "apply_discord", "apply_slack"]


class TestConfigFile:
    """Tests for loading and writing the config file."""

    def test_missing_file_is_empty(self, tmp_path: Path):
        assert load_config(tmp_path / "openclaw.json") == {}

    @pytest.mark.parametrize("content", ["{not json", "[1, 2]", "", "\"text\""])
    def test_unparsable_file_is_empty(self, tmp_path: Path, content: str):
        path = tmp_path / "openclaw.json"
        path.write_text(content)

        assert load_config(path) == {}

    def test_write_is_pretty_printed_and_leaves_no_temp_files(self, tmp_path: Path):
        path = tmp_path / "openclaw.json"

        write_config(path, {"gateway": {"port": 18789}})

        assert path.read_text() == '{\n  "gateway": {\n    "port": 18789\n  }\n}\n'
        assert [p.name for p in tmp_path.iterdir()] == ["openclaw.json"]

    def test_new_file_is_world_readable(self, tmp_path: Path):
        path = tmp_path / "openclaw.json"

        write_config(path, {})

        assert stat.S_IMODE(path.stat().st_mode) == 0o644

    def test_rewrite_keeps_existing_mode(self, tmp_path: Path):
        path = tmp_path / "openclaw.json"
        path.write_text("{}")
        path.chmod(0o640)

        reconcile_file(path, {})

        assert stat.S_IMODE(path.stat().st_mode) == 0o640

    def test_reconcile_file_round_trip(self, tmp_path: Path):
        path = tmp_path / "openclaw.json"
        path.write_text(json.dumps(STALE_BACKUP))

        written = reconcile_file(path, {"TELEGRAM_BOT_TOKEN": "abc"})

        assert json.loads(path.read_text()) == written
        assert written["channels"]["telegram"]["botToken"] == "abc"

    def test_reconcile_file_recovers_from_corrupt_file(self, tmp_path: Path):
        path = tmp_path / "openclaw.json"
        path.write_text("{\"gateway\": ")

        reconcile_file(path, {})

        assert json.loads(path.read_text())["gateway"]["port"] == 18789
