from app.services.identity_service import (
    Resolution,
    ResolutionKind,
    resolve_account,
)
from app.services.onboarding_machine import (
    InvalidTransitionError,
    OnboardingState,
    can_transition,
    transition,
)
from app.services.pending_action_service import (
    PendingKind,
    create_pending_action,
    resolve_latest,
)
