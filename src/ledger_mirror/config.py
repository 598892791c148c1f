"""Configuration loading."""
import os
from pathlib import Path
from typing import Optional, Union

import structlog
import yaml

logger = structlog.get_logger()

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[2] / "config.yaml"
DEFAULT_RPC_URL = "https://api.mainnet-beta.solana.com"


def load_config(path: Optional[Union[str, Path]] = None) -> dict:
    """Load configuration from YAML file."""
    config_path = Path(path) if path else Path(os.getenv("LEDGER_MIRROR_CONFIG", DEFAULT_CONFIG_PATH))

    if not config_path.exists():
        logger.warning("config_file_not_found", path=str(config_path))
        return {}

    with open(config_path) as f:
        config = yaml.safe_load(f) or {}

    logger.info("config_loaded", path=str(config_path))
    return config


def rpc_url() -> str:
    return os.getenv("SOLANA_RPC_URL") or DEFAULT_RPC_URL


def ws_url() -> str:
    """Websocket endpoint, derived from the RPC URL when not set explicitly."""
    explicit = os.getenv("SOLANA_WS_URL", "").strip()
    if explicit:
        return explicit
    url = rpc_url()
    if url.startswith("http"):
        return url.replace("http", "ws", 1)
    return url
