"""Example handlers.

Run a worker for them with:

    spindle worker -m examples.handlers
"""

import asyncio
import os
import time
from datetime import datetime, timezone

import spindle


@spindle.handler(task_type="email", description="Send an email", timeout_seconds=30)
async def send_email(ctx: spindle.TaskContext):
    for field in ("to", "subject", "body"):
        if field not in ctx.payload:
            # Retrying a malformed payload can never succeed
            raise spindle.NonRetryableError(f"Missing '{field}' field in email payload")

    ctx.logger.info(f"Sending email to {ctx.payload['to']}: {ctx.payload['subject']}")
    await asyncio.sleep(0.1)
    return spindle.TaskResult.completed(delivered_to=ctx.payload["to"])


@spindle.handler(task_type="data_processing", description="Count, sum or stamp a list")
async def process_data(ctx: spindle.TaskContext):
    if "data" not in ctx.payload:
        raise spindle.NonRetryableError("Missing 'data' field in payload")

    data = ctx.payload["data"]
    operation = ctx.payload.get("operation", "process")
    ctx.logger.info(f"Processing data with operation: {operation}")

    if operation in ("count", "sum") and not isinstance(data, list):
        return spindle.TaskResult.failed(
            f"Data is not an array for {operation} operation", retryable=False
        )

    if operation == "count":
        return {"count": len(data)}
    if operation == "sum":
        return {"sum": sum(v for v in data if isinstance(v, (int, float)))}
    if operation == "process":
        return {"processed": True, "timestamp": datetime.now(timezone.utc).isoformat()}

    return spindle.TaskResult.failed(f"Unknown operation: {operation}", retryable=False)


@spindle.handler(task_type="file_cleanup", description="Delete a file older than max_age_hours")
def cleanup_file(ctx: spindle.TaskContext):
    # Plain function: runs in a worker thread
    path = ctx.payload.get("file_path")
    if not path:
        raise spindle.NonRetryableError("Missing 'file_path' field in payload")

    max_age_hours = ctx.payload.get("max_age_hours", 24)
    if not os.path.exists(path):
        return {"deleted": False, "reason": "missing"}

    age_hours = (time.time() - os.path.getmtime(path)) / 3600
    if age_hours < max_age_hours:
        return {"deleted": False, "age_hours": round(age_hours, 2)}

    os.remove(path)
    ctx.logger.info(f"Deleted {path}")
    return {"deleted": True, "age_hours": round(age_hours, 2)}


@spindle.handler(task_type="delay_task", description="Sleep, for load and chaos testing")
async def delay_task(ctx: spindle.TaskContext):
    delay_seconds = ctx.payload.get("delay_seconds", 1)
    scenario = ctx.payload.get("test_scenario", "general")
    ctx.logger.info(
        f"Delay task (scenario: {scenario}, delay: {delay_seconds}s, attempt {ctx.attempt}/{ctx.max_attempts})"
    )

    deadline = ctx.payload.get("deadline")
    if deadline:
        remaining = (datetime.fromisoformat(deadline) - datetime.now(timezone.utc)).total_seconds()
        if remaining < delay_seconds:
            raise RuntimeError(
                f"Insufficient time: {remaining:.0f}s remaining, {delay_seconds}s needed"
            )

    if ctx.payload.get("fail_until_attempt", 0) >= ctx.attempt:
        raise RuntimeError(f"Simulated failure on attempt {ctx.attempt}")

    await asyncio.sleep(delay_seconds)
    return {"delay_seconds": delay_seconds, "test_scenario": scenario, "attempt": ctx.attempt}
