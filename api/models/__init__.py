from models.delivery_job import Base, DeliveryJob
from models.recipient_gate import RecipientGate

__all__ = ["Base", "DeliveryJob", "RecipientGate"]
