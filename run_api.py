#!/usr/bin/env python3
"""
Script to run the read API with uvicorn.
"""

import logging
import os

import uvicorn

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# Run the FastAPI application
if __name__ == "__main__":
    uvicorn.run(
        "medchain.api:app",
        host=os.getenv("API_HOST", "0.0.0.0"),
        port=int(os.getenv("API_PORT", "8000")),
        reload=os.getenv("API_RELOAD", "false").lower() == "true",
    )
