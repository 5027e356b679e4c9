# Services - Business Logic Layer
"""
Stageflow Services Module.

This module provides the core business logic for:
- Business time accounting
- Stage chronology
- Notification rule resolution and scheduling
- Notification delivery
- Background job scheduling
"""

# Business Time
from .business_time import (
    business_hours,
    is_working_day,
    wall_minutes,
    format_business_hours,
    format_wall_duration,
    default_calendar,
)

# Contacts & Rules
from .contacts import ContactDirectory
from .rule_resolver import (
    NotificationRuleResolver,
    midnight_utc,
    offset_date,
)

# Scheduling
from .notification_scheduler import (
    NotificationScheduler,
    idempotency_key,
    load_rules,
    get_rule,
)

# Chronology
from .chronology import ChronologyLedger

# Delivery
from .notifications import (
    NotificationService,
    NotificationResult,
    notification_service,
)
from .delivery import (
    DeliveryWorker,
    DeliveryOutcome,
    ClientTaskCreator,
)

# Background Scheduler
from .scheduler import (
    NotificationJobScheduler,
    JobFailureMonitor,
    get_scheduler,
)

__all__ = [
    # Business Time
    "business_hours",
    "is_working_day",
    "wall_minutes",
    "format_business_hours",
    "format_wall_duration",
    "default_calendar",
    # Contacts & Rules
    "ContactDirectory",
    "NotificationRuleResolver",
    "midnight_utc",
    "offset_date",
    # Scheduling
    "NotificationScheduler",
    "idempotency_key",
    "load_rules",
    "get_rule",
    # Chronology
    "ChronologyLedger",
    # Delivery
    "NotificationService",
    "NotificationResult",
    "notification_service",
    "DeliveryWorker",
    "DeliveryOutcome",
    "ClientTaskCreator",
    # Background Scheduler
    "NotificationJobScheduler",
    "JobFailureMonitor",
    "get_scheduler",
]
