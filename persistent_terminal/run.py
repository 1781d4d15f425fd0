"""
Runner for the persistent terminal service.

Installed as the ``pwt-server`` console script. All settings come from
PWT_* environment variables (see config.py).
"""

import uvicorn

from .config import TerminalConfig


def main():
    config = TerminalConfig()

    print(f"Starting Persistent Terminal Service on {config.host}:{config.port}...")
    print(f"State directory: {config.base_dir}")
    print()

    uvicorn.run(
        "persistent_terminal.main:app",
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()
