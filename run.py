#!/usr/bin/env python3
"""
Voucher Approval Engine Entry Point

Starts the FastAPI server using settings from APPROVAL_* environment variables.
"""

import sys

from approval_engine.api import run_server
from approval_engine.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Voucher Approval Engine...")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server()
    except KeyboardInterrupt:
        print("\nShutting down Voucher Approval Engine...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
