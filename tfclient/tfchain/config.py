"""
TFChain config file for chain constants and the default node endpoint
"""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(os.path.join(Path.cwd(), ".env"))

BLOCK_TIME_SECONDS = 6

# 1 initial attempt + 5 retries
MAX_ATTEMPTS = 6

MAX_HEIGHT_SEARCH_ITERATIONS = 64

SUBSCRIPTION_JOIN_TIMEOUT_SECS = BLOCK_TIME_SECONDS

DEFAULT_RPC = os.getenv("TFCHAIN_RPC") or os.getenv("LOCAL_RPC") or "ws://127.0.0.1:9944"
