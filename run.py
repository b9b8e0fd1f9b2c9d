#!/usr/bin/env python3
"""
FastPay Ledger Entry Point

Starts the FastAPI server (port 8090 unless FASTPAY_API_PORT is set).
"""

import sys

from fastpay_ledger.api import run_server
from fastpay_ledger.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting FastPay Ledger...")
    print(f"Storage: {config.storage_backend}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\nShutting down FastPay Ledger...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
