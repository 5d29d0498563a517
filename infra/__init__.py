"""Infrastructure modules for vivault-automation"""

from .alerting import AlertService, AlertSeverity  # noqa: F401
from .metrics import MetricsRecorder, TickStats  # noqa: F401
from .api_server import ApiServer, VaultApi  # noqa: F401
from .state_store import StateStore  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"MetricsRecorder",
	"TickStats",
	"ApiServer",
	"VaultApi",
	"StateStore",
]
