"""Test package for the messaging sync engine."""

import logging

logging.getLogger("asyncio").setLevel(logging.ERROR)
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
