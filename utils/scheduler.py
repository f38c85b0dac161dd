"""
utils/scheduler.py
Background task scheduler for maintenance operations
"""

import logging
import asyncio
from typing import Callable

logger = logging.getLogger(__name__)


async def run_periodic_task(
    task_func: Callable,
    interval_seconds: float,
    task_name: str = "Periodic Task"
):
    """
    Run a task periodically in the background until cancelled

    Args:
        task_func: Function to execute periodically
        interval_seconds: Interval between executions in seconds
        task_name: Name for logging
    """
    logger.info(f"Starting periodic task: {task_name} (interval: {interval_seconds}s)")

    while True:
        await asyncio.sleep(interval_seconds)

        try:
            result = task_func()
        except Exception as e:
            # Keep the loop alive; the next run gets another chance
            logger.error(f"Error in periodic task {task_name}: {type(e).__name__}")
            continue

        if result is not None:
            logger.info(f"{task_name} completed: {result}")
        else:
            logger.info(f"{task_name} completed successfully")
