"""Grouped channel interfaces + adapters."""

from .memory import FifoSubscription, InMemoryFifoChannel
from .publisher import ChannelMessage, ChannelRef, GroupedPublisher
from .sns import ChannelPublishError, SnsFifoPublisher
from .sqs import SqsFifoConsumer, messages_from_lambda_event

__all__ = [
    "ChannelMessage",
    "ChannelPublishError",
    "ChannelRef",
    "FifoSubscription",
    "GroupedPublisher",
    "InMemoryFifoChannel",
    "SnsFifoPublisher",
    "SqsFifoConsumer",
    "messages_from_lambda_event",
]
