"""Admission control: credit eligibility and plan-constrained validation."""

from typing import Iterable, Optional

from pydantic import BaseModel

from .errors import InsufficientCredits, InvalidJobRequest
from .models import QUALITY_RANK, Account, JobRequest, MusicTrack, Plan, plan_features


class Admission(BaseModel):
    """Outcome of an admission check."""
    accepted: bool
    reason: Optional[str] = None
    remaining: Optional[int] = None  # None when credits are unlimited
    requested: int = 0

    def raise_for_rejection(self) -> None:
        if not self.accepted:
            raise InsufficientCredits(self.remaining or 0, self.requested)


class AdmissionController:
    """Decides whether new jobs may enter the queue.

    Only the credit axis is checked here. Concurrency is the dispatcher's
    business: an admitted job may still wait in the queue.
    """

    def __init__(self, max_free_credits: int = 2):
        self.max_free_credits = max_free_credits

    def try_admit(
        self,
        plan: Plan,
        credits_used: int,
        requested_job_count: int,
        credits_reserved: int = 0,
    ) -> Admission:
        features = plan_features(plan)
        if features.unlimited_credits:
            return Admission(accepted=True, requested=requested_job_count)

        remaining = max(0, self.max_free_credits - credits_used - credits_reserved)
        if requested_job_count > remaining:
            return Admission(
                accepted=False,
                reason="InsufficientCredits",
                remaining=remaining,
                requested=requested_job_count,
            )
        return Admission(accepted=True, remaining=remaining, requested=requested_job_count)

    def admit_account(self, account: Account, requested_job_count: int) -> Admission:
        return self.try_admit(
            account.plan,
            account.credits_used,
            requested_job_count,
            credits_reserved=account.credits_reserved,
        )

    def reserve(self, account: Account, count: int) -> None:
        """Hold credits for admitted jobs. Paid plans never hold credits."""
        if not account.features.unlimited_credits:
            account.credits_reserved += count

    def release(self, account: Account) -> None:
        if account.credits_reserved > 0:
            account.credits_reserved -= 1

    def charge(self, account: Account, reserved: bool) -> None:
        """Record one successful video, converting its reservation into usage.

        Only reserved jobs count against the allowance, so work admitted on a
        paid plan stays free after a downgrade.
        """
        if reserved:
            if account.credits_reserved > 0:
                account.credits_reserved -= 1
            if not account.features.unlimited_credits:
                account.credits_used += 1
        account.total_videos += 1


def validate_requests(requests: Iterable[JobRequest], plan: Plan) -> None:
    """Reject settings the owner's plan does not allow."""
    features = plan_features(plan)
    for request in requests:
        quality = request.settings.quality
        if QUALITY_RANK[quality] > QUALITY_RANK[features.max_quality]:
            raise InvalidJobRequest(
                f"Quality '{quality.value}' requires a higher plan than '{plan.value}' "
                f"(max '{features.max_quality.value}')"
            )
        if request.reference_images and not features.can_use_reference_images:
            raise InvalidJobRequest(f"Reference images are not available on the '{plan.value}' plan")
        if request.settings.music == MusicTrack.CUSTOM and not features.can_upload_audio:
            raise InvalidJobRequest(f"Custom audio is not available on the '{plan.value}' plan")
