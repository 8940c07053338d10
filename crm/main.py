from __future__ import annotations

import asyncio
import os
from pathlib import Path

import uvicorn

from core.api import create_api_app
from core.app import CrmApplication
from core.config import AppConfig, load_config
from core.logging import configure_logging

CONFIG_ENV = "CRM_CONFIG"


async def _run(config: AppConfig) -> None:
    async with CrmApplication(config=config) as crm:
        if not config.api.enabled:
            return
        api = create_api_app(crm)
        server = uvicorn.Server(
            uvicorn.Config(
                app=api,
                host=config.api.host,
                port=config.api.port,
                log_level=config.logging.level.lower(),
            )
        )
        await server.serve()


def resolve_config_path() -> Path:
    """CRM_CONFIG wins, then the YAML next to this module, then ./config in the working directory."""
    override = os.getenv(CONFIG_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    bundled = Path(__file__).resolve().parent / "config" / "config.yaml"
    if bundled.exists():
        return bundled
    return Path.cwd() / "config" / "config.yaml"


def main() -> None:
    config = load_config(resolve_config_path())
    configure_logging(config.logging)
    asyncio.run(_run(config))


if __name__ == "__main__":
    main()
