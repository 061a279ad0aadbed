"""Run the room inspection API server."""
import os
import signal
import sys

import uvicorn
from dotenv import load_dotenv

from room_inspection.utils.logging_config import setup_logging

# Load environment variables from .env file
load_dotenv()


def signal_handler(sig, frame):
    """Handle shutdown signals gracefully."""
    print("\nShutting down server...")
    sys.exit(0)


if __name__ == "__main__":
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    setup_logging(os.getenv("LOG_LEVEL", "INFO"))

    try:
        uvicorn.run(
            "room_inspection.api.app:app",
            host=os.getenv("API_HOST", "0.0.0.0"),
            port=int(os.getenv("API_PORT", "8000")),
            reload=os.getenv("API_RELOAD", "false").lower() == "true",
            log_level="info"
        )
    except KeyboardInterrupt:
        print("\nServer stopped by user")
        sys.exit(0)
    except Exception as e:
        print(f"Server error: {e}")
        sys.exit(1)
