from core.log import configure_logging, get_logger
from inscriber.config import InscriberConfig
from inscriber.endpoints import create_app
from inscriber.service import InscriberService

logger = get_logger(__name__)


def main() -> None:
    import uvicorn

    config = InscriberConfig()
    if config.log_file:
        configure_logging(config.log_file)

    app = create_app(InscriberService(config))
    logger.info(
        "Starting inscriber API on %s:%s",
        config.settings.get("api_host"),
        config.settings.get("api_port"),
    )
    uvicorn.run(
        app,
        host=config.settings.get("api_host"),
        port=int(config.settings.get("api_port")),
    )


if __name__ == "__main__":
    main()
