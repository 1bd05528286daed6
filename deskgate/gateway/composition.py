"""Gateway composition: route classification and the two-stage gate.

The Gateway owns the policy table, the admission controller and the upload
pipeline, and sequences them for one request:

  1. classify(method, path)  → route class (None = not rate limited)
  2. admit(descriptor)       → Admission, or PolicyViolation when over limit
  3. validate_uploads(...)   → accepted candidates, or UploadRejected
     (file-accepting routes only, and only after step 2 admitted)
  4. complete(admission, status)  → post-response release hook

A rejection at step 2 or 3 writes nothing to the shared store beyond the
increment step 2 already made.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, NoReturn, Optional, Sequence

from deskgate.config import Config, RouteRule, UploadConfig
from deskgate.errors import PolicyViolation, UploadRejected
from deskgate.models.admission import Decision, RequestDescriptor
from deskgate.models.upload import UploadCandidate, ValidationVerdict
from deskgate.ratelimit.controller import AdmissionController, Clock
from deskgate.ratelimit.policy import RateLimitPolicy, RouteClass, build_policies
from deskgate.store.protocol import CounterStore
from deskgate.upload.pipeline import UploadPipeline, UploadRules
from deskgate.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Admission:
    """An admitted request: the decision plus the policy that produced it."""

    decision: Decision
    policy: RateLimitPolicy


class Gateway:
    """Sequences admission control and upload validation per route class."""

    def __init__(
        self,
        controller: AdmissionController,
        pipeline: UploadPipeline,
        policies: Mapping[str, RateLimitPolicy],
        routes: Sequence[RouteRule],
        upload_limits: UploadConfig,
    ) -> None:
        self.controller = controller
        self.pipeline = pipeline
        self.policies = dict(policies)
        self.routes = list(routes)
        self.upload_limits = upload_limits

        for rule in self.routes:
            if rule.route_class not in self.policies:
                raise ValueError(
                    f"route {rule.prefix!r} uses unknown route class {rule.route_class!r}"
                )

    @classmethod
    def from_config(
        cls,
        config: Config,
        store: CounterStore,
        clock: Optional[Clock] = None,
    ) -> "Gateway":
        """Build the gateway from a loaded Config and a connected store.

        Raises:
            ValueError: An invalid rate_limits override, an unknown route class
                        in ``routes``, or a malformed upload table extension.
        """
        controller_kwargs = {"clock": clock} if clock is not None else {}
        controller = AdmissionController(
            store, key_prefix=config.store.key_prefix, **controller_kwargs
        )
        pipeline = UploadPipeline(UploadRules.from_config(config.uploads))
        return cls(
            controller=controller,
            pipeline=pipeline,
            policies=build_policies(config.rate_limits),
            routes=config.routes,
            upload_limits=config.uploads,
        )

    # ─── Admission ────────────────────────────────────────────────────────────

    def classify(self, method: str, path: str) -> Optional[str]:
        """Return the route class of the first matching rule, or None."""
        method = method.upper()
        for rule in self.routes:
            if rule.methods is not None and method not in rule.methods:
                continue
            if path == rule.prefix or path.startswith(rule.prefix.rstrip("/") + "/"):
                return rule.route_class
        return None

    def policy_for(self, route_class: Optional[str]) -> Optional[RateLimitPolicy]:
        if route_class is None:
            return None
        return self.policies.get(route_class)

    @staticmethod
    def needs_body_fields(route_class: Optional[str]) -> bool:
        """True when the route class keys its bucket on request body fields."""
        return route_class == RouteClass.AUTH.value

    async def admit(self, descriptor: RequestDescriptor) -> Optional[Admission]:
        """Run the admission controller for the descriptor's route class.

        Returns None for unprotected routes, an Admission when admitted.

        Raises:
            PolicyViolation: The caller is over the limit for this window.
        """
        policy = self.policy_for(descriptor.route_class)
        if policy is None:
            return None

        decision = await self.controller.admit(descriptor, policy)
        if not decision.admit:
            raise PolicyViolation(decision)
        return Admission(decision=decision, policy=policy)

    async def complete(self, admission: Optional[Admission], status_code: int) -> bool:
        """Post-response hook: give the slot back when the policy skips this outcome.

        Returns True when a decrement was issued and succeeded.
        """
        if admission is None:
            return False
        return await self.controller.release(admission.decision, admission.policy, status_code)

    # ─── Uploads ──────────────────────────────────────────────────────────────

    def validate_uploads(
        self,
        candidates: Sequence[UploadCandidate],
        descriptor: RequestDescriptor,
    ) -> list[UploadCandidate]:
        """Run the integrity pipeline over every file of one request.

        Raises:
            UploadRejected: A file (or the batch as a whole) failed a stage.
        """
        verdict, offending = self.pipeline.validate_batch(candidates)
        if not verdict.accepted:
            self.reject_upload(verdict, descriptor, offending)
        return list(candidates)

    def reject_upload(
        self,
        verdict: ValidationVerdict,
        descriptor: RequestDescriptor,
        candidate: Optional[UploadCandidate] = None,
    ) -> NoReturn:
        """Log an upload rejection and raise it.

        Raises:
            UploadRejected: Always.
        """
        logger.warning(
            "Upload rejected",
            reason_code=verdict.reason_code.value if verdict.reason_code else None,
            reason=verdict.message,
            filename=candidate.original_filename if candidate else None,
            mime_type=candidate.declared_mime_type if candidate else None,
            ip=descriptor.client_ip,
            caller=descriptor.caller_id,
            path=descriptor.path,
        )
        raise UploadRejected(verdict)
