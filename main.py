"""
Task Assistant — Entry Point.

Single entry point: `python main.py` starts the reminder worker and sweeper.
"""

import logging

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

from src.bot.app import main

if __name__ == "__main__":
    main()
