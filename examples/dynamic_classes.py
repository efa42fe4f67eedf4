"""
Example: Intercepting methods you do not own.

This example shows how to:
1. Name a third-party method in the configuration
2. Let Encore patch it at init time
3. Replay an asyncio coroutine from a recording

Usage:
    python dynamic_classes.py
"""

import asyncio

import encore
from encore import DynamicClassEntity, EncoreConfig


class WeatherClient:
    """Pretend this class lives in a library you cannot decorate."""

    async def forecast(self, city: str) -> list[str]:
        await asyncio.sleep(0.5)
        return [f"{city}: sunny", f"{city}: rain later"]


async def run(record_id: str | None = None) -> str:
    client = WeatherClient()

    if record_id is None:
        with encore.record() as context:
            print(await client.forecast("Lisbon"))
        return context.record_id

    with encore.replay(record_id):
        print(await client.forecast("Lisbon"))
    return record_id


def main():
    entity = DynamicClassEntity(
        clazz_name=f"{WeatherClient.__module__}.{WeatherClient.__qualname__}",
        operation="forecast",
        parameter_types="builtins.str",
    )
    config = EncoreConfig.from_env()
    config.dynamic_classes.append(entity)
    encore.init(config)

    record_id = asyncio.run(run())
    print(f"Recorded {record_id}; replaying without the half-second wait...")
    asyncio.run(run(record_id))

    encore.stop()


if __name__ == "__main__":
    main()
