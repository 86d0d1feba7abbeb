"""Incidents opened by failing checks and their event log."""

from .models import Incident, IncidentEvent, IncidentStatus, Severity
from .store import IncidentStore
