from .booking import contains, ensure_utc, find_conflicts, has_time_overlap
from .catalog import Venue, VenueCatalog, default_venues
from .config import Settings, get_settings
from .engine import ReservationEngine, ReservationPatch, SlotLockTable, SweepResult, build_engine
from .errors import (
	AlreadyTerminal,
	CancellationWindowClosed,
	ConcurrentModification,
	DurationExceeded,
	Forbidden,
	InvalidAccessCode,
	InvalidInterval,
	InvalidSlot,
	InvalidTransition,
	NotFound,
	ReservationError,
	ReservationStateError,
	ReservationStorageError,
	ReservationValidationError,
	SlotConflict,
	UnknownVenue,
)
from .filters import ReservationFilter, build_predicate
from .lifecycle import PaymentStatus, ReservationStatus
from .yaml_store import ReservationRecord, ReservationYamlRepository

__all__ = [
	"contains",
	"ensure_utc",
	"find_conflicts",
	"has_time_overlap",
	"Venue",
	"VenueCatalog",
	"default_venues",
	"Settings",
	"get_settings",
	"ReservationEngine",
	"ReservationPatch",
	"SlotLockTable",
	"SweepResult",
	"build_engine",
	"AlreadyTerminal",
	"CancellationWindowClosed",
	"ConcurrentModification",
	"DurationExceeded",
	"Forbidden",
	"InvalidAccessCode",
	"InvalidInterval",
	"InvalidSlot",
	"InvalidTransition",
	"NotFound",
	"ReservationError",
	"ReservationStateError",
	"ReservationStorageError",
	"ReservationValidationError",
	"SlotConflict",
	"UnknownVenue",
	"ReservationFilter",
	"build_predicate",
	"PaymentStatus",
	"ReservationStatus",
	"ReservationRecord",
	"ReservationYamlRepository",
]
