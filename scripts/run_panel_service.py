"""
StreamPanel Service Launcher

Starts the panel API from the panel/ package.

This service provides:
- Subscriber, stream and content management backed by the panel database
- Background sync of committed changes to the live streaming backend
- Live-first dashboard and connection stats with store fallback
- Operator notifications and the update webhook

Usage:
    python scripts/run_panel_service.py --host 0.0.0.0 --port 8080

Environment Variables:
    STREAMPANEL_API_PORT: Panel API port (default: 8080)
    STREAMPANEL_BIND_HOST: Bind address (default: 0.0.0.0)
    STREAMPANEL_DB_URL: SQLAlchemy database URL (default: panel/data/panel.db)
    STREAMPANEL_SERVER_DOMAIN: Live backend domain seeded into settings
    STREAMPANEL_LOG_FILE: Optional log file in addition to stdout
"""
import argparse
import os
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import uvicorn


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the StreamPanel sync and notification service")
    parser.add_argument("--host", default=os.getenv("STREAMPANEL_BIND_HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=int(os.getenv("STREAMPANEL_API_PORT", "8080")))
    parser.add_argument("--log-level", default=os.getenv("STREAMPANEL_LOG_LEVEL", "INFO"))
    args = parser.parse_args()

    print("=" * 60)
    print("StreamPanel Service")
    print("=" * 60)
    print(f"API Address: {args.host}:{args.port}")
    print(f"Database: {os.getenv('STREAMPANEL_DB_URL', 'panel/data/panel.db')}")
    print(f"Live backend domain: {os.getenv('STREAMPANEL_SERVER_DOMAIN') or '(from panel settings)'}")
    print("=" * 60)

    # Set environment variables for service startup
    os.environ["STREAMPANEL_API_PORT"] = str(args.port)
    os.environ["STREAMPANEL_BIND_HOST"] = args.host
    os.environ["STREAMPANEL_LOG_LEVEL"] = args.log_level

    uvicorn.run("panel.service:app", host=args.host, port=args.port, reload=False)


if __name__ == "__main__":
    main()
