"""Run the relay with uvicorn: ``python -m media_relay``."""

import uvicorn

from .settings import load_relay_settings_from_env


def main() -> None:
    settings = load_relay_settings_from_env()
    uvicorn.run(
        "media_relay.app:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
