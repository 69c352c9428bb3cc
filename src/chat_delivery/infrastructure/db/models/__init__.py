from chat_delivery.infrastructure.db.models.message import MessageModel

__all__ = ["MessageModel"]
