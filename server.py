"""
Spotter - memory and safety orchestration for a fitness-coaching assistant.
Operational HTTP entry point.
"""

import logging
import os

import uvicorn

from app.main import app

logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))


# =============================================================================
# Main
# =============================================================================

if __name__ == "__main__":
    logging.getLogger("spotter").info("Spotter starting...")
    uvicorn.run(app, host=os.environ.get("HOST", "0.0.0.0"), port=int(os.environ.get("PORT", "8080")))
