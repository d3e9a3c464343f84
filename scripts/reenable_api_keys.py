"""
Re-enable LLM API keys whose rate-limit cooldown has elapsed.

Same job as the /api/cron/api-keys endpoint, for hosts that schedule
scripts instead of HTTP calls.

Usage:
    python scripts/reenable_api_keys.py
    python scripts/reenable_api_keys.py --cooldown-hours 12

Cron example (hourly):
    0 * * * * cd /path/to/hiro && python scripts/reenable_api_keys.py >> logs/api_keys.log 2>&1
"""

import sys
import os
import argparse

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from hiro.ai.api_key_manager import reenable_rate_limited_keys
from hiro.config import API_KEY_COOLDOWN_HOURS
from hiro.logging_config import setup_logging


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Re-enable cooled-down rate-limited API keys")
    parser.add_argument("--cooldown-hours", type=int, default=API_KEY_COOLDOWN_HOURS,
                        help=f"Hours a key stays rate-limited (default: {API_KEY_COOLDOWN_HOURS})")
    args = parser.parse_args()

    setup_logging()
    result = reenable_rate_limited_keys(cooldown_hours=args.cooldown_hours)
    print(f"[api-keys] Checked {result['keysChecked']}, re-enabled {result['keysReEnabled']}")
    for key_id in result["reEnabledKeyIds"]:
        print(f"  {key_id}")
