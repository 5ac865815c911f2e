from __future__ import annotations

import argparse

import uvicorn

from .api import create_app
from .config import AppConfig
from .logging import configure_logging
from .runtime import Runtime


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="forgeflow", description="Run the ForgeFlow management API.")
    parser.add_argument("--config", help="path to config.ini")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8765)
    args = parser.parse_args(argv)

    config = AppConfig(args.config)
    configure_logging(config.log_level(), json_output=config.log_json())
    app = create_app(Runtime.from_config(config))
    uvicorn.run(app, host=args.host, port=args.port, log_config=None)


if __name__ == "__main__":
    main()
