from __future__ import annotations

import os

import uvicorn

from innsync.config_manager import ConfigManager
from innsync.logging_config import setup_logging


def main() -> None:
    host = os.getenv("INNSYNC_HOST", "0.0.0.0")
    port = int(os.getenv("INNSYNC_PORT", "8080"))
    config = ConfigManager(os.getenv("INNSYNC_CONFIG_PATH", "config.yaml")).load()
    setup_logging(config.logging)
    uvicorn.run("innsync.web_admin:app", host=host, port=port, reload=False, log_config=None)


if __name__ == "__main__":
    main()
