"""OpenClaw sandbox bootstrap: R2 restore/sync, config reconciliation, gateway supervision."""
