"""Import all models to register them with SQLAlchemy metadata."""
from dropwatch.models.base import Base
from dropwatch.models.vehicle import Vehicle
from dropwatch.models.trip import Trip
from dropwatch.models.gps_fix import GPSFix
from dropwatch.models.drop import Drop
from dropwatch.models.corridor import Corridor
from dropwatch.models.traversal import Traversal
from dropwatch.models.corridor_baseline import CorridorBaseline
from dropwatch.models.alert import Alert

__all__ = [
    "Base",
    "Vehicle",
    "Trip",
    "GPSFix",
    "Drop",
    "Corridor",
    "Traversal",
    "CorridorBaseline",
    "Alert",
]
