"""Enrollment service and gallery persistence."""

import os

import numpy as np
import pytest

from conftest import DIM, FakeCamera, FakeEmbedder, make_frame, vector_for


def _completed_controller(manual_ticker, frames, target):
    from capture.controller import CaptureController
    from core.config import CaptureConfig
    from schemas import IdentityFields

    ctl = CaptureController(FakeCamera(frames=frames), CaptureConfig(target=target), ticker_factory=manual_ticker)
    ctl.start(IdentityFields("Jane Doe", "2024001"))
    manual_ticker.instances[-1].fire(target)
    return ctl


class TestEnrollmentService:
    """Capture -> embeddings -> gallery"""

    def test_enroll_from_complete_capture(self, manual_ticker, gallery, tmp_path, logger):
        from identity.enrollment import EnrollmentService
        from identity.gallery_store import JsonGalleryStore
        from schemas import CaptureState

        frames = [make_frame(10 + i) for i in range(20)]
        ctl = _completed_controller(manual_ticker, frames, 20)
        embedder = FakeEmbedder()
        store = JsonGalleryStore(tmp_path / "gallery.json")

        identity = EnrollmentService(gallery, embedder, store).enroll_from_capture(ctl)

        assert identity.sample_count == 20
        assert embedder.calls == 20
        assert int(identity.reference_sample[0, 0, 0]) == 10
        assert np.allclose(identity.embeddings[-1], vector_for(29))
        assert ctl.state is CaptureState.IDLE
        assert ctl.sample_count == 0
        assert store.exists()
        logger.info("✅ Completed capture enrolled with 20 embeddings")

    def test_incomplete_capture_rejected(self, manual_ticker, gallery):
        from capture.controller import CaptureController
        from core.config import CaptureConfig
        from core.errors import IncompleteCapture
        from identity.enrollment import EnrollmentService
        from schemas import IdentityFields

        ctl = CaptureController(FakeCamera(default=make_frame(1)), CaptureConfig(target=20),
                                ticker_factory=manual_ticker)
        ctl.start(IdentityFields("Jane Doe", "2024001"))
        manual_ticker.instances[0].fire(12)
        ctl.stop()

        with pytest.raises(IncompleteCapture):
            EnrollmentService(gallery, FakeEmbedder()).enroll_from_capture(ctl)
        assert len(gallery) == 0

    def test_embedding_failure_keeps_capture(self, manual_ticker, gallery):
        from core.errors import EmbeddingError
        from identity.enrollment import EnrollmentService
        from schemas import CaptureState

        ctl = _completed_controller(manual_ticker, [make_frame(i) for i in range(3)], 3)

        with pytest.raises(EmbeddingError):
            EnrollmentService(gallery, FakeEmbedder(fail=True)).enroll_from_capture(ctl)
        assert ctl.state is CaptureState.COMPLETE
        assert ctl.sample_count == 3
        assert len(gallery) == 0

    def test_failed_save_commits_nothing_and_retry_succeeds(self, manual_ticker, gallery, tmp_path, monkeypatch, logger):
        from identity.crypto import CryptoKeyError, clear_key_cache
        from identity.enrollment import EnrollmentService
        from identity.gallery import EmbeddingGallery
        from identity.gallery_store import EncryptedGalleryStore, load_gallery
        from schemas import CaptureState

        env_var = "SECUREID_TEST_ENROLL_KEY"
        clear_key_cache()
        monkeypatch.delenv(env_var, raising=False)
        path = tmp_path / "gallery.enc"
        service = EnrollmentService(gallery, FakeEmbedder(), EncryptedGalleryStore(path, env_var=env_var))
        ctl = _completed_controller(manual_ticker, [make_frame(i) for i in range(3)], 3)

        with pytest.raises(CryptoKeyError):
            service.enroll_from_capture(ctl)
        assert len(gallery) == 0
        assert gallery.find_by_external_ref("2024001") is None
        assert not path.exists()
        assert ctl.state is CaptureState.COMPLETE

        monkeypatch.setenv(env_var, "cd" * 32)
        identity = service.enroll_from_capture(ctl)
        assert identity.sample_count == 3
        assert ctl.state is CaptureState.IDLE

        restored = EmbeddingGallery()
        assert load_gallery(restored, EncryptedGalleryStore(path, env_var=env_var)) == 1
        assert restored.get(identity.id).external_ref == "2024001"
        clear_key_cache()
        logger.info("✅ Failed save left the gallery untouched; retry enrolled and saved")

    def test_duplicate_reference_keeps_capture(self, manual_ticker, gallery):
        from core.errors import DuplicateIdentity
        from identity.enrollment import EnrollmentService
        from schemas import CaptureState, IdentityFields

        gallery.enroll(IdentityFields("Someone", "2024001"), [vector_for(1)])
        ctl = _completed_controller(manual_ticker, [make_frame(i) for i in range(3)], 3)

        with pytest.raises(DuplicateIdentity):
            EnrollmentService(gallery, FakeEmbedder()).enroll_from_capture(ctl)
        assert ctl.state is CaptureState.COMPLETE
        assert len(gallery) == 1


class TestGalleryStores:
    """JSON and AES-GCM snapshot files"""

    def _populated(self):
        from identity.gallery import EmbeddingGallery
        from schemas import IdentityFields

        g = EmbeddingGallery()
        g.enroll(IdentityFields("Jane Doe", "2024001"), [vector_for(42)] * 4, reference_sample=make_frame(42))
        g.enroll(IdentityFields("John Roe", "2024002"), [vector_for(200)] * 2)
        return g

    def test_json_round_trip(self, tmp_path, logger):
        from identity.gallery import EmbeddingGallery
        from identity.gallery_store import JsonGalleryStore, load_gallery, save_gallery

        store = JsonGalleryStore(tmp_path / "nested" / "gallery.json")
        save_gallery(self._populated(), store)
        assert not (tmp_path / "nested" / "gallery.json.tmp").exists()

        restored = EmbeddingGallery()
        assert load_gallery(restored, store) == 2
        assert restored.stats().total_samples == 6
        assert restored.dim == DIM
        match = restored.classify(vector_for(42), k=3, max_distance=0.1)
        assert match.external_ref == "2024001"
        logger.info("✅ JSON gallery snapshot round-tripped")

    def test_missing_file_loads_nothing(self, tmp_path, gallery):
        from identity.gallery_store import JsonGalleryStore, load_gallery

        assert load_gallery(gallery, JsonGalleryStore(tmp_path / "absent.json")) == 0
        assert len(gallery) == 0

    def test_garbage_file_rejected(self, tmp_path, gallery):
        from identity.gallery_store import GalleryStoreError, JsonGalleryStore, load_gallery

        path = tmp_path / "gallery.json"
        path.write_text("not json at all")
        with pytest.raises(GalleryStoreError):
            load_gallery(gallery, JsonGalleryStore(path))

        path.write_text('{"something": "else"}')
        with pytest.raises(GalleryStoreError):
            load_gallery(gallery, JsonGalleryStore(path))

    def test_encrypted_round_trip(self, tmp_path, logger):
        from identity.gallery import EmbeddingGallery
        from identity.gallery_store import EncryptedGalleryStore, load_gallery, save_gallery

        key = os.urandom(32)
        path = tmp_path / "gallery.enc"
        save_gallery(self._populated(), EncryptedGalleryStore(path, key=key))

        blob = path.read_bytes()
        assert blob[:4] == b"SIDG"
        assert b"2024001" not in blob

        restored = EmbeddingGallery()
        assert load_gallery(restored, EncryptedGalleryStore(path, key=key)) == 2
        logger.info("✅ Encrypted gallery snapshot round-tripped")

    def test_wrong_key_rejected(self, tmp_path, gallery):
        from identity.crypto import CryptoCiphertextError
        from identity.gallery_store import EncryptedGalleryStore, load_gallery, save_gallery

        path = tmp_path / "gallery.enc"
        save_gallery(self._populated(), EncryptedGalleryStore(path, key=os.urandom(32)))

        with pytest.raises(CryptoCiphertextError):
            load_gallery(gallery, EncryptedGalleryStore(path, key=os.urandom(32)))
        assert len(gallery) == 0

    def test_key_from_environment(self, tmp_path, monkeypatch):
        from identity.crypto import CryptoKeyError, clear_key_cache
        from identity.gallery import EmbeddingGallery
        from identity.gallery_store import EncryptedGalleryStore, load_gallery, save_gallery

        env_var = "SECUREID_TEST_GALLERY_KEY"
        clear_key_cache()
        monkeypatch.delenv(env_var, raising=False)
        store = EncryptedGalleryStore(tmp_path / "g.enc", env_var=env_var)
        with pytest.raises(CryptoKeyError):
            save_gallery(self._populated(), store)

        monkeypatch.setenv(env_var, "ab" * 32)
        save_gallery(self._populated(), store)
        assert load_gallery(EmbeddingGallery(), store) == 2
        clear_key_cache()

    def test_store_from_config(self, test_config, tmp_path):
        from identity.gallery_store import EncryptedGalleryStore, JsonGalleryStore, store_from_config

        test_config.gallery.path = str(tmp_path / "g.json")
        assert isinstance(store_from_config(test_config.gallery), JsonGalleryStore)
        test_config.gallery.encrypted = True
        assert isinstance(store_from_config(test_config.gallery), EncryptedGalleryStore)


class TestCryptoKeys:
    @pytest.mark.parametrize("raw", ["ab" * 32, "c2VjcmV0LWtleS1tYXRlcmlhbA==", "plain passphrase"])
    def test_decode_key_always_32_bytes(self, raw):
        from identity.crypto import decode_key

        assert len(decode_key(raw)) == 32

    def test_empty_key_rejected(self):
        from identity.crypto import CryptoKeyError, decode_key

        with pytest.raises(CryptoKeyError):
            decode_key("   ")
