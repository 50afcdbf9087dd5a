"""Enqueue a few tasks and drain them with an in-process worker.

    python -m examples.demo
"""

import asyncio

import spindle
from spindle.core.logger import configure_logging

from . import handlers


async def main():
    configure_logging("INFO")

    registry = spindle.HandlerRegistry()
    for func in (
        handlers.send_email,
        handlers.process_data,
        handlers.cleanup_file,
        handlers.delay_task,
    ):
        registry.add(func)

    async with spindle.TaskStore(".spindle/demo.db") as store:
        dispatcher = spindle.Dispatcher(store, registry, concurrency=4, poll_interval=0.1)
        await dispatcher.sync_task_types()

        client = spindle.TaskClient(store)
        await client.create_task(
            "email",
            {"to": "ops@example.com", "subject": "Hello", "body": "From spindle"},
            priority="high",
        )
        await client.create_task("email", {"to": "nobody@example.com"})
        await client.create_task("data_processing", {"data": [1, 2, 3], "operation": "sum"})
        await client.create_task(
            "delay_task",
            {"delay_seconds": 0.2, "fail_until_attempt": 1},
            retry_strategy={"kind": "fixed", "base_delay": 0, "max_attempts": 3},
        )

        # The delay task fails once and is due again immediately, so one drain runs it twice
        await dispatcher.run_until_idle()

        print(dispatcher.stats())
        print(await client.stats())
        for task in await client.dead_letter():
            print(f"dead letter: {task['id']} {task['task_type']}: {task['last_error']}")


if __name__ == "__main__":
    asyncio.run(main())
