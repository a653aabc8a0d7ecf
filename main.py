import argparse
import logging

import uvicorn

from api.app import create_app
from config import SystemConfig
from core.context import ServiceContext, initialize_directories
from utils.logging_config import setup_logging


def serve(config: SystemConfig):
    """Run the HTTP API until interrupted"""
    logger = logging.getLogger(__name__)
    initialize_directories(config)

    context = ServiceContext.from_config(config)
    app = create_app(context)

    logger.info("Starting Gallery Search API on %s:%d", config.host, config.port)
    try:
        uvicorn.run(app, host=config.host, port=config.port, log_config=None)
    finally:
        logger.info("Shutting down; finishing queued extraction")
        context.close()


def main():
    """Main application entry point"""
    parser = argparse.ArgumentParser(description="Gallery Search API server")
    parser.add_argument('-c', '--config', default='config.yaml',
                        help='Path to YAML configuration')
    parser.add_argument('--host', help='Override bind host')
    parser.add_argument('--port', type=int, help='Override bind port')
    args = parser.parse_args()

    # Load configuration
    config = SystemConfig.load(args.config)
    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port

    setup_logging(config.log_level, config.log_dir)
    serve(config)


if __name__ == "__main__":
    main()
