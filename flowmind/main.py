import uvicorn

from flowmind.application.api.api_server import create_app
from flowmind.infrastructure.config.settings import AppConfig
from flowmind.infrastructure.observability.logging import setup_logging


def main():
    config = AppConfig.from_env()
    setup_logging(config.log_level, config.log_format)
    app = create_app(config)
    uvicorn.run(app, host=config.host, port=config.port, log_config=None)


if __name__ == "__main__":
    main()
