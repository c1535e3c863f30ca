"""nfsquota daemon."""

from .agent import QuotaAgent
from .entry import entry
from .orphan import OrphanInfo, OrphanManager
