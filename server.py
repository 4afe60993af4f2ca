"""taskrelay broker server entry point."""

import os

import uvicorn
from dotenv import load_dotenv

# Load environment variables before the settings are first read
load_dotenv()


def main() -> None:
    from taskrelay.core.config import get_settings

    settings = get_settings()
    host = os.getenv("TASKRELAY_BROKER__HOST", settings.broker.host)
    port = int(os.getenv("TASKRELAY_BROKER__PORT", settings.broker.port))
    reload = os.getenv("DEBUG", "false").lower() == "true"

    print(f"Starting taskrelay broker on {host}:{port}")
    uvicorn.run("taskrelay.main:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    main()
