#!/usr/bin/env python3
"""
Deposit Engine Entry Point

Starts the FastAPI server with the settings from EngineConfig
(DEPOSIT_ENGINE_* environment variables or .env).
"""

import sys

import uvicorn

from deposit_engine.api import create_app
from deposit_engine.config import get_config
from deposit_engine.engine import DepositEngine
from deposit_engine.logging_config import setup_logging


def run_server(host: str, port: int, log_level: str = "info"):
    """Run the FastAPI server"""
    app = create_app(DepositEngine())
    uvicorn.run(app, host=host, port=port, log_level=log_level)


if __name__ == "__main__":
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

    print("🏦 Starting Deposit Engine...")
    print(f"🗄  Storage: {config.database_url}")
    print(f"🔒 Audit trail {'active' if config.enable_audit_logging else 'disabled'}")
    print("💰 All amounts use Decimal precision")
    print(f"🌐 API available at: http://localhost:{config.api_port}")
    print(f"📚 Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(host=config.api_host, port=config.api_port, log_level=config.log_level.lower())
    except KeyboardInterrupt:
        print("\n👋 Shutting down Deposit Engine...")
    except Exception as e:
        print(f"❌ Error starting server: {e}")
        sys.exit(1)
