import uvicorn

from ytmux.config.settings import config
from ytmux.core.logging import logger, setup_logging


def start_api() -> None:
    setup_logging(config.logging)
    logger.info(f"Starting uvicorn host={config.server.host} port={config.server.port}")
    # log_config=None keeps the handlers installed by setup_logging
    uvicorn.run("ytmux.main:app", host=config.server.host, port=config.server.port, log_config=None)


if __name__ == "__main__":
    start_api()
