"""Entrypoint for running the ledger_dash FastAPI backend locally."""
from __future__ import annotations

import logging

import uvicorn

from ledger_dash import app
from ledger_dash.config import load_config


if __name__ == "__main__":
    config = load_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )
    uvicorn.run(
        "ledger_dash.api:app",
        host="127.0.0.1",
        port=8000,
        reload=True,
    )
