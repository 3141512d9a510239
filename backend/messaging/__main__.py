"""Run the messaging service with uvicorn: ``python -m messaging``."""
import uvicorn

from messaging.config import get_config
from messaging.main import create_app


def main() -> None:
    config = get_config()
    uvicorn.run(
        create_app(config),
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level,
    )


if __name__ == "__main__":
    main()
