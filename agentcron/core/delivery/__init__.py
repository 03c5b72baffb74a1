"""Result delivery — retry queue and Telegram sender."""

from agentcron.core.delivery.queue import DeliveryQueue, DeliverySink
from agentcron.core.delivery.telegram import make_telegram_sender, send_message

__all__ = ["DeliveryQueue", "DeliverySink", "make_telegram_sender", "send_message"]
