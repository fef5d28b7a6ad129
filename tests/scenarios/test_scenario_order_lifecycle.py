"""
Scenario - an order from the queue to completion

Covers:
- enrolling a worker, claiming the oldest open order
- the claim moving the remote order to in-progress
- start -> prepared -> shipped -> complete through the API
- capacity: a second claim is refused until the first order is finished
- the archived history entry
"""
import pytest


@pytest.mark.scenario
class TestOrderLifecycle:

    async def test_claim_prepare_ship_complete(
        self, fake_gateway, actor, enroll, load_assignment, history_of
    ):
        # --- setup ---
        await enroll("noa", "Noa")
        fake_gateway.add_order("2001", items=[{"name": "Candle", "quantity": 3}])
        fake_gateway.add_order("2002")
        noa = actor("noa", name="Noa")

        # --- step 1: claim takes the oldest order ---
        claim = await noa.claim()
        assert claim["outcome"] == "claimed"
        assignment = claim["assignment"]
        assert assignment["order_id"] == "2001"
        assert assignment["order_snapshot"]["items"] == [{"name": "Candle", "quantity": 3}]
        assert fake_gateway.orders["2001"].status.slug == "in_progress"

        # --- step 2: at capacity ---
        second = await noa.claim()
        assert second["outcome"] == "at_capacity"
        assert second["active_count"] == 1

        # --- step 3: the preparation flow ---
        for step, expected in (("start", "preparing"), ("prepared", "prepared"), ("shipped", "shipped")):
            response = await noa.post(f"/assignments/{assignment['id']}/{step}")
            assert response.status_code == 200, response.text
            assert response.json()["status"] == expected

        done = await noa.post(f"/assignments/{assignment['id']}/complete", {"notes": "courier picked up"})
        assert done.status_code == 200
        assert done.json()["status"] == "completed"

        row = await load_assignment(assignment["id"])
        assert row.completed_at is not None

        [entry] = await history_of("2001")
        assert entry.status == "completed"
        assert entry.worker_name == "Noa"
        assert entry.notes == "courier picked up"
        assert entry.duration_seconds is not None

        # --- step 4: capacity is free again ---
        next_claim = await noa.claim()
        assert next_claim["outcome"] == "claimed"
        assert next_claim["assignment"]["order_id"] == "2002"

    async def test_two_workers_never_share_an_order(self, fake_gateway, actor, enroll):
        await enroll("noa", "Noa")
        await enroll("eli", "Eli")
        fake_gateway.add_order("3001")
        fake_gateway.add_order("3002")
        # the platform keeps listing claimed orders as new
        fake_gateway.apply_status_writes = False

        first = await actor("noa").claim()
        second = await actor("eli").claim()

        assert first["assignment"]["order_id"] == "3001"
        assert second["assignment"]["order_id"] == "3002"

    async def test_prepared_is_refused_when_platform_disagrees(
        self, fake_gateway, actor, enroll, load_assignment
    ):
        await enroll("noa", "Noa")
        fake_gateway.add_order("4001")
        noa = actor("noa")
        assignment = (await noa.claim())["assignment"]
        await noa.post(f"/assignments/{assignment['id']}/start")

        # the store moves the order back under review; a sweep picks it up
        fake_gateway.set_remote_status("4001", "under_review")
        await noa.post("/assignments/reconcile")

        refused = await noa.post(f"/assignments/{assignment['id']}/prepared")
        assert refused.status_code == 400
        assert refused.json()["error"]["code"] == "ERR_2003"

        synced = await noa.post(f"/assignments/{assignment['id']}/prepared", {"sync_remote": "in_progress"})
        assert synced.status_code == 200
        assert synced.json()["status"] == "prepared"
        assert (await load_assignment(assignment["id"])).remote_status_slug == "in_progress"
