"""Real-time push to trade participants."""

from starbit.notifications.channel import TradeChannelHub, channel_name

__all__ = ["TradeChannelHub", "channel_name"]
