"""Test package for the chat synchronization client."""

import logging

logging.getLogger("asyncio").setLevel(logging.ERROR)
