#!/usr/bin/env python3
"""
Checkout backend startup wrapper.

    python -m checkout_backend.start_backend
"""
import os
import sys

import uvicorn


def main() -> int:
    port = int(os.getenv("PORT", "8000"))
    print(f"[Checkout] Starting checkout backend on http://0.0.0.0:{port}")
    try:
        uvicorn.run(
            "checkout_backend.main:app",
            host="0.0.0.0",
            port=port,
            reload=False,
            log_level="info",
            access_log=True,
        )
    except KeyboardInterrupt:
        print("\n[Checkout] Shutting down...")
    return 0


if __name__ == "__main__":
    sys.exit(main())
