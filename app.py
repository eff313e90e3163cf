"""
Simple startup script for the Match Engine application.
Run this to start the FastAPI server.
"""

import logging

from matchengine.config import Config

# Configure logging
logging.basicConfig(level=Config.LOG_LEVEL)
logger = logging.getLogger(__name__)

def main():
    """Start the FastAPI application."""
    try:
        import uvicorn

        logger.info("Starting Match Engine API server...")
        logger.info(f"API documentation at: http://localhost:{Config.API_PORT}/docs")
        logger.info("Press Ctrl+C to stop the server")

        uvicorn.run(
            "matchengine.main:app",
            host=Config.API_HOST,
            port=Config.API_PORT,
            log_level=Config.LOG_LEVEL.lower()
        )

    except KeyboardInterrupt:
        logger.info("Server stopped by user")
    except ImportError as e:
        logger.error(f"Missing dependencies: {e}")
        logger.error("Please install the package: pip install -e .")

if __name__ == "__main__":
    main()
