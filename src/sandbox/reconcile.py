"""
Gateway config reconciliation.

``reconcile`` folds the environment into an existing ``openclaw.json``
document through an ordered list of rules. Each rule takes a document and
the environment and returns a new document; later rules may overwrite keys
written by earlier ones. Running it again on its own output with the same
environment produces the same document, so it is safe on every boot.

Environment-driven keys always win over whatever was restored from backup.
"""

import copy
import json
import os
import tempfile
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

from . import providers
from .log_config import get_logger
from .types import GATEWAY_MODE, GATEWAY_PORT, TRUSTED_PROXIES, DmPolicy

Document = dict[str, Any]
Rule = Callable[[Document, Mapping[str, str]], Document]

DEFAULT_CONFIG_MODE = 0o644

log = get_logger("reconcile", service="sandbox")


def _section(doc: Document, *keys: str) -> Document:
    """Return the nested mapping at ``keys``, creating (or replacing non-mapping) parents."""
    node = doc
    for key in keys:
        child = node.get(key)
        if not isinstance(child, dict):
            child = {}
            node[key] = child
        node = child
    return node


def _allow_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [entry.strip() for entry in raw.split(",") if entry.strip()]


def ensure_sections(doc: Document, env: Mapping[str, str]) -> Document:
    doc = copy.deepcopy(doc)
    _section(doc, "gateway")
    _section(doc, "channels")
    return doc


def apply_gateway_defaults(doc: Document, env: Mapping[str, str]) -> Document:
    """Port, mode and trusted proxies are fixed by the sandbox network."""
    doc = copy.deepcopy(doc)
    gateway = _section(doc, "gateway")
    gateway["port"] = GATEWAY_PORT
    gateway["mode"] = GATEWAY_MODE
    gateway["trustedProxies"] = list(TRUSTED_PROXIES)
    return doc


def apply_gateway_token(doc: Document, env: Mapping[str, str]) -> Document:
    token = env.get("OPENCLAW_GATEWAY_TOKEN")
    if not token:
        return doc
    doc = copy.deepcopy(doc)
    _section(doc, "gateway", "auth")["token"] = token
    return doc


def apply_dev_mode(doc: Document, env: Mapping[str, str]) -> Document:
    if env.get("OPENCLAW_DEV_MODE") != "true":
        return doc
    doc = copy.deepcopy(doc)
    _section(doc, "gateway", "controlUi")["allowInsecureAuth"] = True
    return doc


def apply_ai_gateway_model(doc: Document, env: Mapping[str, str]) -> Document:
    """Register the ``CF_AI_GATEWAY_MODEL`` provider and make it the default model."""
    raw = env.get("CF_AI_GATEWAY_MODEL")
    if not raw:
        return doc

    parsed = providers.split_model_ref(raw)
    if parsed is None:
        log.warn("reconcile.ai_gateway_model_invalid", value=raw, expected="provider/model-id")
        return doc
    provider, model_id = parsed

    base_url = providers.ai_gateway_base_url(
        provider,
        env.get("CF_AI_GATEWAY_ACCOUNT_ID"),
        env.get("CF_AI_GATEWAY_GATEWAY_ID"),
        env.get("CF_ACCOUNT_ID"),
    )
    api_key = env.get("CLOUDFLARE_AI_GATEWAY_API_KEY")
    if not base_url or not api_key:
        log.warn(
            "reconcile.ai_gateway_model_incomplete",
            provider=provider,
            has_base_url=bool(base_url),
            has_api_key=bool(api_key),
        )
        return doc

    doc = copy.deepcopy(doc)
    name, entry = providers.ai_gateway_provider(provider, model_id, base_url, api_key)
    _section(doc, "models", "providers")[name] = entry
    _section(doc, "agents", "defaults")["model"] = {"primary": f"{name}/{model_id}"}
    log.info("reconcile.ai_gateway_model", provider=name, model=model_id, base_url=base_url)
    return doc


def apply_openrouter(doc: Document, env: Mapping[str, str]) -> Document:
    """Make OpenRouter the only route to Anthropic/OpenAI models."""
    api_key = env.get("OPENROUTER_API_KEY")
    if not api_key:
        return doc

    doc = copy.deepcopy(doc)
    provider_table = _section(doc, "models", "providers")
    for name in providers.DIRECT_PROVIDERS:
        provider_table.pop(name, None)
    provider_table[providers.OPENROUTER_PROVIDER] = providers.openrouter_provider(api_key)

    default_model = env.get("DEFAULT_MODEL") or providers.OPENROUTER_DEFAULT_MODEL
    _section(doc, "agents", "defaults")["model"] = {"primary": default_model}
    log.info("reconcile.openrouter", default_model=default_model)
    return doc


# Channel rules replace the whole channel object: stale keys from older
# backups fail the gateway's strict schema validation.


def apply_telegram(doc: Document, env: Mapping[str, str]) -> Document:
    token = env.get("TELEGRAM_BOT_TOKEN")
    if not token:
        return doc

    dm_policy = env.get("TELEGRAM_DM_POLICY") or DmPolicy.PAIRING.value
    channel: Document = {"botToken": token, "enabled": True, "dmPolicy": dm_policy}
    allow_from = _allow_list(env.get("TELEGRAM_DM_ALLOW_FROM"))
    if allow_from:
        channel["allowFrom"] = allow_from
    elif dm_policy == DmPolicy.OPEN.value:
        channel["allowFrom"] = ["*"]

    doc = copy.deepcopy(doc)
    _section(doc, "channels")["telegram"] = channel
    return doc


def apply_discord(doc: Document, env: Mapping[str, str]) -> Document:
    """Discord nests its DM settings under ``dm``."""
    token = env.get("DISCORD_BOT_TOKEN")
    if not token:
        return doc

    dm_policy = env.get("DISCORD_DM_POLICY") or DmPolicy.PAIRING.value
    dm: Document = {"policy": dm_policy}
    allow_from = _allow_list(env.get("DISCORD_DM_ALLOW_FROM"))
    if allow_from:
        dm["allowFrom"] = allow_from
    elif dm_policy == DmPolicy.OPEN.value:
        dm["allowFrom"] = ["*"]

    doc = copy.deepcopy(doc)
    _section(doc, "channels")["discord"] = {"token": token, "enabled": True, "dm": dm}
    return doc


def apply_slack(doc: Document, env: Mapping[str, str]) -> Document:
    bot_token = env.get("SLACK_BOT_TOKEN")
    app_token = env.get("SLACK_APP_TOKEN")
    if not (bot_token and app_token):
        return doc

    doc = copy.deepcopy(doc)
    _section(doc, "channels")["slack"] = {
        "botToken": bot_token,
        "appToken": app_token,
        "enabled": True,
    }
    return doc


RULES: tuple[Rule, ...] = (
    ensure_sections,
    apply_gateway_defaults,
    apply_gateway_token,
    apply_dev_mode,
    apply_ai_gateway_model,
    apply_openrouter,
    apply_telegram,
    apply_discord,
    apply_slack,
)


def reconcile(doc: Document, env: Mapping[str, str], rules: tuple[Rule, ...] = RULES) -> Document:
    """Apply every rule in order. The input document is never mutated."""
    for rule in rules:
        doc = rule(doc, env)
    return doc


def load_config(path: Path) -> Document:
    """Read the config file; a missing or unparsable file counts as an empty document."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        log.info("reconcile.config_unreadable", path=str(path), exc=e)
        return {}
    if not isinstance(data, dict):
        log.info("reconcile.config_not_object", path=str(path), found=type(data).__name__)
        return {}
    return data


def dump_config(doc: Document) -> str:
    return json.dumps(doc, indent=2, ensure_ascii=False) + "\n"


def write_config(path: Path, doc: Document) -> None:
    """Atomic write: temp file in the target directory, then rename over the target."""
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        mode = path.stat().st_mode & 0o777
    except FileNotFoundError:
        mode = DEFAULT_CONFIG_MODE
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(dump_config(doc))
        # mkstemp creates 0600; keep the mode the config had before.
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def reconcile_file(path: Path, env: Mapping[str, str]) -> Document:
    """Load, reconcile and write back the config file. Returns the written document."""
    log.info("reconcile.start", path=str(path))
    doc = reconcile(load_config(path), env)
    write_config(path, doc)
    log.info("reconcile.complete", path=str(path), sections=sorted(doc))
    return doc
