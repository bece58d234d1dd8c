from __future__ import annotations

from reviewflow.models.manuscript import Manuscript, ManuscriptStatus, normalize_status


def test_submitted_only_moves_to_screening_or_forced() -> None:
    allowed = ManuscriptStatus.allowed_next(ManuscriptStatus.SUBMITTED.value)
    assert allowed == {"plagiarism_pending", "published", "rejected"}


def test_plagiarism_pending_branches_on_verdict() -> None:
    allowed = ManuscriptStatus.allowed_next(ManuscriptStatus.PLAGIARISM_PENDING.value)
    assert ManuscriptStatus.UNDER_REVIEW.value in allowed
    assert ManuscriptStatus.PLAGIARISM_FAILED.value in allowed
    assert ManuscriptStatus.REVIEWED_ACCEPT.value not in allowed


def test_plagiarism_failed_is_dead_end_except_resubmit_and_force() -> None:
    allowed = ManuscriptStatus.allowed_next(ManuscriptStatus.PLAGIARISM_FAILED.value)
    assert allowed == {"plagiarism_pending", "published", "rejected"}


def test_reviewed_states_only_finalize() -> None:
    assert ManuscriptStatus.allowed_next("reviewed_accept") == {"published", "rejected"}
    assert ManuscriptStatus.allowed_next("reviewed_reject") == {"published", "rejected"}


def test_terminal_states() -> None:
    assert ManuscriptStatus.allowed_next(ManuscriptStatus.PUBLISHED.value) == set()
    assert ManuscriptStatus.allowed_next(ManuscriptStatus.REJECTED.value) == {"plagiarism_pending"}
    assert ManuscriptStatus.terminal() == {"published", "rejected"}
    assert ManuscriptStatus.allowed_next("unknown") == set()


def test_normalize_status() -> None:
    assert normalize_status(" Under_Review ") == "under_review"
    assert normalize_status("") is None
    assert normalize_status(None) is None
    assert normalize_status("pre_check") is None


def test_manuscript_defaults_and_summary() -> None:
    ms = Manuscript(id="m1", text="body", author_id="a1")
    assert ms.status == ManuscriptStatus.SUBMITTED
    assert ms.revision == 1
    assert ms.reviews == []
    assert ms.summary()["review_count"] == 0
    assert ms.summary()["status"] == "submitted"
