"""Allow `python -m airassist` to launch the client."""

import asyncio
import sys

from airassist.main import main

sys.exit(asyncio.run(main()))
