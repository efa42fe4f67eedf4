"""
Basic example: Recording and replaying a decorated service.

This example shows how to:
1. Initialize Encore with a local mock store
2. Record the results of @mockable calls
3. Replay them without touching the real dependency

Usage:
    python basic_recording.py
"""

import random

import encore
from encore import mockable


class ExchangeRates:
    """Stands in for a slow, non-deterministic upstream service."""

    def __init__(self) -> None:
        self.calls = 0

    @mockable(key="#currency")
    def rates(self, currency: str, precision: int = 4) -> dict[str, float]:
        self.calls += 1
        return {
            "EUR": round(random.uniform(0.8, 1.0), precision),
            "GBP": round(random.uniform(0.7, 0.9), precision),
        }


def main():
    encore.init()

    service = ExchangeRates()

    # Record mode - the real method runs and its result is stored
    with encore.record() as context:
        recorded = service.rates("USD")
        print(f"Recorded {recorded} under {context.record_id}")

    # Replay mode - the stored result is returned and the method is skipped
    replaying = ExchangeRates()
    with encore.replay(context.record_id):
        replayed = replaying.rates("USD", precision=2)
        print(f"Replayed {replayed}")

    assert replayed == recorded
    print(f"\nUpstream calls during replay: {replaying.calls}")
    print(f"Run 'encore list --record-id {context.record_id}' to inspect the mocks.")


if __name__ == "__main__":
    main()
