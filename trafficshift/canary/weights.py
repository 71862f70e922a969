"""
Weight destinations - value types for a computed traffic split.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Optional

MAX_WEIGHT = 100


@dataclass(frozen=True)
class WeightDestination:
    """A named traffic target and the percentage it receives."""
    service_name: str = ""
    pod_template_hash: str = ""
    weight: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "serviceName": self.service_name,
            "podTemplateHash": self.pod_template_hash,
            "weight": self.weight,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WeightDestination":
        return cls(
            service_name=data.get("serviceName", ""),
            pod_template_hash=data.get("podTemplateHash", ""),
            weight=int(data.get("weight", 0)),
        )


@dataclass(frozen=True)
class TrafficWeights:
    """
    Traffic split for canary, stable and any additional destinations.

    The weights normally add up to 100, but an interrupted update may leave
    the canary at 0 while additional destinations still hold weight, so the
    sum is not enforced here.
    """
    canary: WeightDestination = field(default_factory=WeightDestination)
    stable: WeightDestination = field(default_factory=WeightDestination)
    additional: tuple[WeightDestination, ...] = ()
    verified: Optional[bool] = None

    @property
    def total(self) -> int:
        return self.canary.weight + self.stable.weight + sum(d.weight for d in self.additional)

    def with_verified(self, verified: Optional[bool]) -> "TrafficWeights":
        return replace(self, verified=verified)

    def to_dict(self) -> dict[str, Any]:
        """Status form persisted on the rollout."""
        data: dict[str, Any] = {
            "canary": self.canary.to_dict(),
            "stable": self.stable.to_dict(),
        }
        if self.additional:
            data["additional"] = [d.to_dict() for d in self.additional]
        if self.verified is not None:
            data["verified"] = self.verified
        return data

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> Optional["TrafficWeights"]:
        if not data:
            return None
        return cls(
            canary=WeightDestination.from_dict(data.get("canary", {})),
            stable=WeightDestination.from_dict(data.get("stable", {})),
            additional=tuple(
                WeightDestination.from_dict(d) for d in data.get("additional") or []
            ),
            verified=data.get("verified"),
        )


def build_traffic_weights(
    canary_service: str,
    stable_service: str,
    canary_hash: str,
    stable_hash: str,
    desired_weight: int,
    additional: tuple[WeightDestination, ...] = (),
) -> TrafficWeights:
    """Build the status weights; stable gets whatever is left over."""
    stable_weight = MAX_WEIGHT - desired_weight - sum(d.weight for d in additional)
    return TrafficWeights(
        canary=WeightDestination(canary_service, canary_hash, desired_weight),
        stable=WeightDestination(stable_service, stable_hash, max(stable_weight, 0)),
        additional=tuple(additional),
    )
