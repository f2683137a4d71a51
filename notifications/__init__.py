from notifications.bulk import BULK_QUEUE, BulkNotificationDispatcher

__all__ = ["BULK_QUEUE", "BulkNotificationDispatcher"]
