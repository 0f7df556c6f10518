"""Liveness-gated verification orchestrator."""

import pytest

from conftest import FakeCamera, FakeEmbedder, StubClassifier, make_frame, vector_for

WAIT = 5.0


def _orchestrator(camera, classifier, embedder, gallery, k=5, max_distance=0.5):
    from core.config import MatchingConfig
    from liveness.gate import LivenessGate
    from verification.orchestrator import VerificationOrchestrator

    return VerificationOrchestrator(
        camera,
        LivenessGate(classifier),
        embedder,
        gallery,
        MatchingConfig(k=k, max_distance=max_distance),
    )


def _enroll(gallery, name, ref, value, n=20):
    from schemas import IdentityFields
    return gallery.enroll(IdentityFields(name, ref), [vector_for(value)] * n, reference_sample=make_frame(value))


class TestVerificationScenarios:
    """End-to-end outcomes"""

    def test_live_on_empty_gallery_is_no_match(self, gallery, logger):
        from schemas import AttemptState

        with _orchestrator(FakeCamera(default=make_frame(42)), StubClassifier(), FakeEmbedder(), gallery) as orch:
            attempt = orch.verify()
            verdict = attempt.wait_liveness(WAIT)
            assert verdict.is_live
            assert attempt.wait_match(WAIT) is None
            assert attempt.match_ready.is_set()
            assert orch.state is AttemptState.LIVE
            assert not attempt.matched
        logger.info("✅ Live face against empty gallery: no match")

    def test_live_enrolled_face_is_identified(self, gallery, logger):
        from schemas import AttemptState

        x = _enroll(gallery, "Jane Doe", "2024001", 42)
        _enroll(gallery, "John Roe", "2024002", 200)

        with _orchestrator(FakeCamera(default=make_frame(42)), StubClassifier(), FakeEmbedder(), gallery) as orch:
            attempt = orch.verify()
            match = attempt.wait_match(WAIT)

            assert attempt.state is AttemptState.LIVE
            assert attempt.liveness_result.confidence == pytest.approx(0.95)
            assert match is not None
            assert match.identity is x
            assert match.distance == 0.0
            assert attempt.as_dict()["match"]["external_ref"] == "2024001"
        logger.info("✅ Enrolled face identified at distance 0")

    def test_low_confidence_is_spoof_and_never_matched(self, gallery, logger):
        from schemas import AttemptState

        _enroll(gallery, "Jane Doe", "2024001", 42)
        embedder = FakeEmbedder()
        classifier = StubClassifier({"isReal": True, "confidence": 0.4, "reason": "Screen glare"})

        with _orchestrator(FakeCamera(default=make_frame(42)), classifier, embedder, gallery) as orch:
            attempt = orch.verify()
            verdict = attempt.wait_liveness(WAIT)
            attempt.wait_match(WAIT)

            assert not verdict.is_live
            assert attempt.state is AttemptState.SPOOF
            assert attempt.match_result is None
            assert embedder.calls == 0
        logger.info("✅ Spoof never reaches the embedder")

    def test_classifier_failure_fails_closed(self, gallery):
        from core.config import DEFAULT_FALLBACK_REASON
        from schemas import AttemptState

        _enroll(gallery, "Jane Doe", "2024001", 42)
        embedder = FakeEmbedder()
        classifier = StubClassifier(error=TimeoutError("liveness deadline"))

        with _orchestrator(FakeCamera(default=make_frame(42)), classifier, embedder, gallery) as orch:
            attempt = orch.verify()
            verdict = attempt.wait_liveness(WAIT)
            attempt.wait_match(WAIT)

            assert attempt.state is AttemptState.SPOOF
            assert verdict.reason == DEFAULT_FALLBACK_REASON
            assert verdict.confidence == 0.0
            assert embedder.calls == 0

    def test_unknown_live_face_is_no_match(self, gallery):
        _enroll(gallery, "Jane Doe", "2024001", 10)

        with _orchestrator(FakeCamera(default=make_frame(250)), StubClassifier(), FakeEmbedder(), gallery,
                           max_distance=0.1) as orch:
            attempt = orch.verify()
            assert attempt.wait_match(WAIT) is None
            assert attempt.liveness_result.is_live


class TestVerificationConcurrency:
    """At most one attempt; liveness visible before matching"""

    def test_second_verify_rejected_while_in_flight(self, gallery, logger):
        from core.errors import AlreadyInProgress
        from schemas import AttemptState

        classifier = StubClassifier(block=True)
        with _orchestrator(FakeCamera(default=make_frame(42)), classifier, FakeEmbedder(), gallery) as orch:
            attempt = orch.verify()
            assert attempt.state is AttemptState.AWAITING_LIVENESS

            with pytest.raises(AlreadyInProgress):
                orch.verify()
            with pytest.raises(AlreadyInProgress):
                orch.reset()

            assert orch.attempt is attempt
            assert attempt.state is AttemptState.AWAITING_LIVENESS
            assert attempt.captured_frame is not None

            classifier.release.set()
            attempt.wait_match(WAIT)
            assert attempt.state is AttemptState.LIVE
            assert classifier.calls == 1
        logger.info("✅ Concurrent verify refused without disturbing the attempt")

    def test_verify_after_terminal_requires_reset(self, gallery):
        from core.errors import AlreadyInProgress
        from schemas import AttemptState

        with _orchestrator(FakeCamera(default=make_frame(42)), StubClassifier(), FakeEmbedder(), gallery) as orch:
            first = orch.verify()
            first.wait_match(WAIT)
            with pytest.raises(AlreadyInProgress):
                orch.verify()

            orch.reset()
            assert orch.state is AttemptState.IDLE
            assert first.captured_frame is None
            assert first.liveness_result is None

            second = orch.verify()
            assert second.attempt_id == first.attempt_id + 1
            second.wait_match(WAIT)

    def test_liveness_observable_while_matching_pending(self, gallery, logger):
        from schemas import AttemptState

        _enroll(gallery, "Jane Doe", "2024001", 42)
        embedder = FakeEmbedder(block=True)

        with _orchestrator(FakeCamera(default=make_frame(42)), StubClassifier(), embedder, gallery) as orch:
            attempt = orch.verify()
            verdict = attempt.wait_liveness(WAIT)

            assert verdict.is_live
            assert attempt.state is AttemptState.LIVE
            assert attempt.matching_pending
            assert attempt.match_result is None

            embedder.release.set()
            match = attempt.wait_match(WAIT)
            assert not attempt.matching_pending
            assert match.external_ref == "2024001"
        logger.info("✅ Live verdict published before match resolved")

    def test_reset_is_noop_when_idle(self, gallery):
        from schemas import AttemptState

        with _orchestrator(FakeCamera(), StubClassifier(), FakeEmbedder(), gallery) as orch:
            orch.reset()
            assert orch.state is AttemptState.IDLE
            assert orch.attempt is None


class TestVerificationErrors:
    """Error state, never a false match"""

    def test_embedder_failure_after_live_is_error(self, gallery, logger):
        from schemas import AttemptState

        _enroll(gallery, "Jane Doe", "2024001", 42)

        with _orchestrator(FakeCamera(default=make_frame(42)), StubClassifier(), FakeEmbedder(fail=True),
                           gallery) as orch:
            attempt = orch.verify()
            assert attempt.wait_liveness(WAIT).is_live
            assert attempt.wait_match(WAIT) is None
            assert attempt.state is AttemptState.ERROR
            assert attempt.error.startswith("EmbeddingFailed")
        logger.info("✅ Embedding failure ends in Error, not Spoof")

    def test_dimension_mismatch_after_live_is_error(self, gallery):
        from schemas import AttemptState

        _enroll(gallery, "Jane Doe", "2024001", 42)
        embedder = FakeEmbedder(dim=3)

        with _orchestrator(FakeCamera(default=make_frame(42)), StubClassifier(), embedder, gallery) as orch:
            attempt = orch.verify()
            attempt.wait_match(WAIT)
            assert attempt.state is AttemptState.ERROR
            assert attempt.error.startswith("MatchFailed")
            assert attempt.match_result is None

    def test_no_frame_is_error_then_retry_after_reset(self, gallery, logger):
        from core.errors import NoFrame
        from schemas import AttemptState

        camera = FakeCamera(frames=[None], default=make_frame(42))
        classifier = StubClassifier()

        with _orchestrator(camera, classifier, FakeEmbedder(), gallery) as orch:
            with pytest.raises(NoFrame):
                orch.verify()
            assert orch.state is AttemptState.ERROR
            assert orch.attempt.error == "NoFrame"
            assert classifier.calls == 0

            orch.reset()
            attempt = orch.verify()
            assert attempt.wait_liveness(WAIT).is_live
            attempt.wait_match(WAIT)
        logger.info("✅ NoFrame recovers after reset")
