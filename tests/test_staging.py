"""
Tests for the staging repository claim primitive and state transitions.
"""

from src.core.schema import ProcessingState
from src.core.staging import StagingRepository

from conftest import make_narrative


def _seed(staging, count):
    staging.insert_narratives(make_narrative(f"CASE-{i:03d}") for i in range(count))


def test_insert_and_count(staging):
    assert staging.insert_narratives([]) == 0
    _seed(staging, 3)

    assert staging.count_by_state() == {"pending": 3, "done": 0, "error": 0}
    assert staging.count_pending() == 3


def test_claim_returns_rows_in_case_id_order(staging):
    staging.insert_narratives([make_narrative("B"), make_narrative("A"), make_narrative("C")])

    token, claimed = staging.claim(2, lease_seconds=60)

    assert token
    assert [record.case_id for record in claimed] == ["A", "B"]


def test_claim_never_hands_out_leased_rows(staging):
    _seed(staging, 5)

    _, first = staging.claim(3, lease_seconds=60)
    _, second = staging.claim(3, lease_seconds=60)
    _, third = staging.claim(3, lease_seconds=60)

    first_ids = {record.case_id for record in first}
    second_ids = {record.case_id for record in second}
    assert len(first) == 3
    assert len(second) == 2
    assert not first_ids & second_ids
    assert third == []


def test_expired_lease_is_claimable_again(db_path):
    now = [1000.0]
    staging = StagingRepository(db_path, clock=lambda: now[0])
    staging.insert_narratives([make_narrative("A")])

    _, claimed = staging.claim(1, lease_seconds=30)
    assert len(claimed) == 1
    assert staging.claim(1, lease_seconds=30)[1] == []

    now[0] += 31
    _, reclaimed = staging.claim(1, lease_seconds=30)
    assert [record.case_id for record in reclaimed] == ["A"]


def test_renew_lease_extends_whole_claim(db_path):
    now = [1000.0]
    staging = StagingRepository(db_path, clock=lambda: now[0])
    staging.insert_narratives([make_narrative("A"), make_narrative("B")])
    token, _ = staging.claim(2, lease_seconds=30)

    now[0] += 20
    assert staging.renew_lease(token, "A", lease_seconds=30) is True

    # Past the original expiry but inside the renewed one, for both rows
    now[0] += 20
    assert staging.claim(2, lease_seconds=30)[1] == []

    now[0] += 11
    other_token, reclaimed = staging.claim(2, lease_seconds=30)
    assert [record.case_id for record in reclaimed] == ["A", "B"]
    assert staging.renew_lease(token, "B", lease_seconds=30) is False
    assert staging.renew_lease(other_token, "B", lease_seconds=30) is True


def test_mark_done_requires_current_claim(staging):
    _seed(staging, 1)
    token, _ = staging.claim(1, lease_seconds=60)

    assert staging.mark_done("CASE-000", "stale-token") is False
    assert staging.mark_done("CASE-000", token) is True
    # Already transitioned; a second write-back is a no-op
    assert staging.mark_done("CASE-000", token) is False

    record = staging.get("CASE-000")
    assert record.processing_state == ProcessingState.DONE
    assert record.processed_at is not None


def test_mark_error_keeps_message(staging):
    _seed(staging, 1)
    token, _ = staging.claim(1, lease_seconds=60)

    assert staging.mark_error("CASE-000", token, "EmbeddingFatalError: HTTP 401") is True

    record = staging.get("CASE-000")
    assert record.processing_state == ProcessingState.ERROR
    assert record.error_message == "EmbeddingFatalError: HTTP 401"
    assert staging.count_pending() == 0


def test_error_rows_are_not_claimed(staging):
    _seed(staging, 2)
    token, _ = staging.claim(2, lease_seconds=60)
    staging.mark_error("CASE-000", token, "boom")
    staging.release(token)

    _, claimed = staging.claim(10, lease_seconds=60)
    assert [record.case_id for record in claimed] == ["CASE-001"]


def test_release_returns_rows_to_pool(staging):
    _seed(staging, 3)
    token, _ = staging.claim(3, lease_seconds=600)

    assert staging.release(token, ["CASE-001"]) == 1
    assert [r.case_id for r in staging.claim(3, lease_seconds=600)[1]] == ["CASE-001"]

    assert staging.release(token) == 2
    assert len(staging.claim(3, lease_seconds=600)[1]) == 2


def test_reset_errors(staging):
    _seed(staging, 3)
    token, _ = staging.claim(3, lease_seconds=60)
    for case_id in ("CASE-000", "CASE-001"):
        staging.mark_error(case_id, token, "boom")
    staging.mark_done("CASE-002", token)

    assert staging.reset_errors(["CASE-001"]) == 1
    assert staging.count_by_state() == {"pending": 1, "done": 1, "error": 1}

    assert staging.reset_errors() == 1
    record = staging.get("CASE-000")
    assert record.processing_state == ProcessingState.PENDING
    assert record.error_message is None

    # Done rows are never reset
    assert staging.get("CASE-002").processing_state == ProcessingState.DONE


def test_refeed_returns_case_to_pending(staging):
    staging.insert_narratives([make_narrative("A", text="old text")])
    token, _ = staging.claim(1, lease_seconds=60)
    staging.mark_done("A", token)

    staging.insert_narratives([make_narrative("A", text="new text")])

    record = staging.get("A")
    assert record.processing_state == ProcessingState.PENDING
    assert record.narrative_text == "new text"


def test_list_by_state(staging):
    _seed(staging, 3)
    token, _ = staging.claim(1, lease_seconds=60)
    staging.mark_error("CASE-000", token, "boom")

    errored = staging.list_by_state(ProcessingState.ERROR)
    assert [record.case_id for record in errored] == ["CASE-000"]
    assert len(staging.list_by_state(ProcessingState.PENDING, limit=1)) == 1


def test_get_missing_case(staging):
    assert staging.get("nope") is None
