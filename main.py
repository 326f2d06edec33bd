"""
RoomSync — Entry Point.

`python main.py` starts the Telegram bot together with the auto-confirm
and negotiation timeout sweeps.
"""

import logging

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
# httpx logs full request URLs at INFO, and Distance Matrix URLs carry the API key
logging.getLogger("httpx").setLevel(logging.WARNING)

from roomsync.bot.telegram_bot import main

if __name__ == "__main__":
    main()
