# Import all models so that SQLAlchemy registers them for metadata.create_all
from luxbook.models.tier import Member, Tier
from luxbook.models.booking_rule import BookingRule, BookingRuleAsset
from luxbook.models.reservation import Reservation
from luxbook.models.rule_approval import RuleApproval
from luxbook.models.audit_log import AuditLog

__all__ = [
    "Tier",
    "Member",
    "BookingRule",
    "BookingRuleAsset",
    "Reservation",
    "RuleApproval",
    "AuditLog",
]
