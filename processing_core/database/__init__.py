"""Database package for the processing core."""
from .connection import (
    close_db,
    create_engine_from_settings,
    create_session_factory,
    init_db,
)
from .models import (
    Base,
    Entitlement,
    FaceDetection,
    Job,
    LedgerEntry,
    MediaAsset,
    PromoCode,
    RedemptionRecord,
)

__all__ = [
    "Base",
    "Entitlement",
    "FaceDetection",
    "Job",
    "LedgerEntry",
    "MediaAsset",
    "PromoCode",
    "RedemptionRecord",
    "close_db",
    "create_engine_from_settings",
    "create_session_factory",
    "init_db",
]
