"""
Consumer package.

    - subscription: positions, buffers and lazy poll results
    - fetcher: Fetch and ListOffsets against partition leaders
    - consumer: the public Consumer
"""

from kafka_client.consumer.consumer import Consumer
from kafka_client.consumer.subscription import PollResult, SubscriptionState

__all__ = [
    "Consumer",
    "PollResult",
    "SubscriptionState",
]
