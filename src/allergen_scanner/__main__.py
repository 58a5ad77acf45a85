import logging
import os

import uvicorn

from .config.settings import get_settings


def main():
    """Main entry point for the application"""
    settings = get_settings()
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    port = int(os.environ.get("PORT", settings.PORT))
    uvicorn.run(
        "allergen_scanner.api.app:app",
        host=settings.HOST,
        port=port,
        reload=False
    )

if __name__ == "__main__":
    main()
