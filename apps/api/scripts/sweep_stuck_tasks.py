import argparse
import asyncio
import json
import os
import sys

# Add parent dir to path to find services
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import settings
from services.sweeper import run_stuck_task_sweep


async def sweep_async(threshold_minutes: int) -> None:
    print(f"🧹 Sweeping tasks stuck in pending or processing for more than {threshold_minutes} minutes...")
    result = await run_stuck_task_sweep(threshold_minutes)
    print(f"  - found: {result['found']}")
    print(f"  - failed: {result['failed']}")
    print(f"  - refunded: {result['refunded']}")
    for item in result["results"]:
        print(f"    {json.dumps(item, ensure_ascii=False)}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Fail stuck image tasks and refund their credits.")
    parser.add_argument(
        "--threshold-minutes",
        type=int,
        default=settings.STUCK_TASK_THRESHOLD_MINUTES,
    )
    args = parser.parse_args()
    asyncio.run(sweep_async(args.threshold_minutes))
