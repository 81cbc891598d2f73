from app.models.account import Account
from app.models.communication_log import CommunicationLog
from app.models.inbound_event import InboundEvent, UnlinkedInboundMessage
from app.models.link_request import LinkRequest, LinkToken
from app.models.memory import Memory, ProfileFact
from app.models.outbound_message import OutboundDeliveryFailure, OutboundMessage
from app.models.pending_action import PendingAction, ScheduledCheckin
from app.models.plan import UserPlan

__all__ = [
    "Account",
    "InboundEvent",
    "UnlinkedInboundMessage",
    "LinkRequest",
    "LinkToken",
    "PendingAction",
    "ScheduledCheckin",
    "OutboundMessage",
    "OutboundDeliveryFailure",
    "Memory",
    "ProfileFact",
    "UserPlan",
    "CommunicationLog",
]
