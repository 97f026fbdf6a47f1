"""First-run provisioning via ``openclaw onboard``."""

import asyncio
from collections.abc import Mapping
from pathlib import Path

from .log_config import get_logger
from .reconcile import write_config
from .types import GATEWAY_BIND, GATEWAY_MODE, GATEWAY_PORT

log = get_logger("onboard", service="sandbox")


def resolve_auth_args(env: Mapping[str, str]) -> list[str] | None:
    """
    Auth flags for the first usable credential source.

    Order: AI Gateway key trio, Anthropic key, OpenAI key. Returns None when
    none is available (e.g. OpenRouter-only sandboxes).
    """
    gateway_key = env.get("CLOUDFLARE_AI_GATEWAY_API_KEY")
    gateway_account = env.get("CF_AI_GATEWAY_ACCOUNT_ID")
    gateway_id = env.get("CF_AI_GATEWAY_GATEWAY_ID")
    if gateway_key and gateway_account and gateway_id:
        return [
            "--auth-choice",
            "cloudflare-ai-gateway-api-key",
            "--cloudflare-ai-gateway-account-id",
            gateway_account,
            "--cloudflare-ai-gateway-gateway-id",
            gateway_id,
            "--cloudflare-ai-gateway-api-key",
            gateway_key,
        ]
    if env.get("ANTHROPIC_API_KEY"):
        return ["--auth-choice", "apiKey", "--anthropic-api-key", env["ANTHROPIC_API_KEY"]]
    if env.get("OPENAI_API_KEY"):
        return ["--auth-choice", "openai-api-key", "--openai-api-key", env["OPENAI_API_KEY"]]
    return None


def build_onboard_command(auth_args: list[str], binary: str = "openclaw") -> list[str]:
    return [
        binary,
        "onboard",
        "--non-interactive",
        "--accept-risk",
        "--mode",
        GATEWAY_MODE,
        *auth_args,
        "--gateway-port",
        str(GATEWAY_PORT),
        "--gateway-bind",
        GATEWAY_BIND,
        "--skip-channels",
        "--skip-skills",
        "--skip-health",
    ]


async def run_onboard(command: list[str]) -> int:
    """Run the onboard command with inherited stdio. Returns its exit code."""
    try:
        process = await asyncio.create_subprocess_exec(*command)
    except FileNotFoundError as e:
        log.error("onboard.binary_missing", binary=command[0], exc=e)
        return 127
    return await process.wait()


async def provision(config_file: Path, env: Mapping[str, str], binary: str = "openclaw") -> bool:
    """
    Create the initial config when none exists.

    Returns True if ``openclaw onboard`` produced the config, False if an
    empty document was written instead and provider setup is left to
    reconciliation.
    """
    auth_args = resolve_auth_args(env)
    if auth_args is not None:
        log.info("onboard.start", auth_choice=auth_args[1])
        exit_code = await run_onboard(build_onboard_command(auth_args, binary))
        if exit_code == 0 and config_file.exists():
            log.info("onboard.complete")
            return True
        log.error("onboard.failed", exit_code=exit_code, config_exists=config_file.exists())
    else:
        log.info("onboard.skip", reason="no_direct_provider_key")

    if not config_file.exists():
        write_config(config_file, {})
        log.info("onboard.minimal_config", path=str(config_file))
    return False
