"""Run a standalone settlement worker against the configured database."""
from __future__ import annotations

from dotenv import load_dotenv

load_dotenv()

from hedgepay.config import get_settings  # noqa: E402
from hedgepay.services.worker import main  # noqa: E402


if __name__ == "__main__":
    settings = get_settings()
    print(f"Using database: {settings.database_url}")
    main()
