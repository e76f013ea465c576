"""
Database Models
"""
from courier_hub.db.models.delivery import Delivery
from courier_hub.db.models.establishment import Establishment
from courier_hub.db.models.actor_profile import ActorProfile
from courier_hub.db.models.ledger_entry import LedgerEntry
from courier_hub.db.models.price_table import NeighborhoodFee, PriceTable

__all__ = [
    "Delivery",
    "Establishment",
    "ActorProfile",
    "LedgerEntry",
    "PriceTable",
    "NeighborhoodFee",
]
