"""Tests for rollout snapshots and their step helpers."""

import pytest

from trafficshift.canary.rollout import CanaryStep, RolloutSnapshot, StringMatch

ROLLOUT = {
    "metadata": {
        "name": "guestbook",
        "namespace": "shop",
        "annotations": {"rollout.argoproj.io/revision": "3"},
    },
    "spec": {
        "replicas": 4,
        "strategy": {
            "canary": {
                "canaryService": "guestbook-canary",
                "stableService": "guestbook-stable",
                "trafficRouting": {
                    "istio": {"virtualService": {"name": "guestbook-vs"}},
                    "plugins": {"acme/router": {"mode": "fast"}},
                    "managedRoutes": [{"name": "header-route"}],
                },
                "steps": [
                    {"setHeaderRoute": {
                        "name": "header-route",
                        "match": [{"headerName": "x-canary", "headerValue": {"exact": "yes"}}],
                    }},
                    {"setWeight": 20},
                    {"setCanaryScale": {"weight": 50}},
                    {"experiment": {"templates": [{"name": "baseline", "specRef": "stable", "weight": 5}]}},
                    {"pause": {}},
                ],
            }
        },
    },
    "status": {
        "currentPodHash": "canary-7d9f",
        "stableRS": "stable-5c4b",
        "currentStepIndex": 3,
        "abortedAt": "2024-05-01T10:00:00Z",
        "canary": {
            "weights": {
                "canary": {"serviceName": "guestbook-canary", "podTemplateHash": "canary-7d9f", "weight": 20},
                "stable": {"serviceName": "guestbook-stable", "podTemplateHash": "stable-5c4b", "weight": 80},
                "verified": True,
            },
        },
    },
}


@pytest.fixture
def snapshot():
    return RolloutSnapshot.from_manifest(ROLLOUT)


@pytest.mark.unit
class TestFromManifest:
    """Building snapshots from Rollout objects."""

    def test_metadata_and_services(self, snapshot):
        assert snapshot.key == "shop/guestbook"
        assert snapshot.revision == 3
        assert snapshot.replicas == 4
        assert snapshot.canary_service == "guestbook-canary"

    def test_traffic_routing(self, snapshot):
        routing = snapshot.traffic_routing

        assert routing.istio == {"virtualService": {"name": "guestbook-vs"}}
        assert routing.nginx is None
        assert routing.plugins == (("acme/router", {"mode": "fast"}),)
        assert [r.name for r in snapshot.managed_routes] == ["header-route"]

    def test_steps(self, snapshot):
        header_step = snapshot.steps[0]

        assert header_step.sets_route
        assert header_step.set_header_route.match[0].header_value == StringMatch(exact="yes")
        assert snapshot.steps[2].set_canary_scale.weight == 50
        assert snapshot.steps[3].experiment[0].spec_ref == "stable"

    def test_status(self, snapshot):
        assert snapshot.status.current_step_index == 3
        assert snapshot.status.aborted_at.year == 2024
        assert snapshot.status.weights.stable.weight == 80
        assert snapshot.status.weights.verified is True

    def test_missing_traffic_routing(self):
        snapshot = RolloutSnapshot.from_manifest({"metadata": {"name": "plain"}})

        assert snapshot.traffic_routing is None
        assert snapshot.managed_routes == ()
        assert snapshot.revision == 1


@pytest.mark.unit
class TestStepHelpers:
    """Walking the step list relative to the current index."""

    def test_current_set_weight_looks_back(self, snapshot):
        assert snapshot.current_set_weight() == 20

    def test_previous_set_weight(self, snapshot):
        assert snapshot.previous_set_weight() == 20

    def test_current_canary_scale(self, snapshot):
        assert snapshot.current_canary_scale().weight == 50

    def test_current_experiment_step(self, snapshot):
        assert [t.name for t in snapshot.current_experiment_step()] == ["baseline"]

    def test_past_last_step(self, make_rollout):
        snapshot = make_rollout(step_index=2)

        assert snapshot.current_step() == (None, 2)
        assert snapshot.current_set_weight() == 100

    def test_no_steps(self, make_rollout):
        snapshot = make_rollout(steps=())

        assert snapshot.current_step() == (None, None)
        assert snapshot.previous_set_weight() == 0

    def test_before_first_set_weight(self, make_rollout):
        steps = (CanaryStep(pause={}), CanaryStep(set_weight=40))

        assert make_rollout(steps=steps, step_index=0).current_set_weight() == 0

    def test_fully_promoted(self, make_rollout):
        assert make_rollout(current_pod_hash="stable-5c4b").is_fully_promoted
        assert not make_rollout().is_fully_promoted
