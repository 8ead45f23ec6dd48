from pathlib import Path

import pytest

from app.errors import ArtifactNotFound, StorageError
from app.storage import ArtifactStore, resolve_download


@pytest.fixture
def store(tmp_path: Path) -> ArtifactStore:
    s = ArtifactStore(tmp_path / "uploads")
    s.ensure_directory()
    return s


class TestEnsureDirectory:
    def test_creates_missing_root(self, tmp_path: Path) -> None:
        s = ArtifactStore(tmp_path / "a" / "b")
        s.ensure_directory()
        assert s.root.is_dir()

    def test_is_idempotent(self, store: ArtifactStore) -> None:
        store.ensure_directory()
        store.ensure_directory()
        assert store.root.is_dir()


class TestContent:
    def test_put_then_get(self, store: ArtifactStore) -> None:
        store.put("merged-1.pdf", b"%PDF data")
        assert store.get("merged-1.pdf") == b"%PDF data"

    def test_get_missing_raises_not_found(self, store: ArtifactStore) -> None:
        with pytest.raises(ArtifactNotFound):
            store.get("nope.pdf")

    def test_put_outside_root_is_refused(self, store: ArtifactStore) -> None:
        with pytest.raises(StorageError):
            store.put("../escape.txt", b"x")
        assert not (store.root.parent / "escape.txt").exists()

    def test_delete_is_idempotent(self, store: ArtifactStore) -> None:
        store.put("tmp.bin", b"x")
        assert store.delete("tmp.bin") is True
        assert store.delete("tmp.bin") is False

    def test_delete_tree_removes_batch(self, store: ArtifactStore) -> None:
        batch, stamp = store.create_batch("pdf-images")
        (batch / f"page-1-{stamp}.png").write_bytes(b"img")
        assert store.delete_tree(batch) is True
        assert not batch.exists()
        assert store.delete_tree(batch) is False


class TestNaming:
    def test_reserve_uses_prefix_timestamp_extension(self, store: ArtifactStore) -> None:
        path = store.reserve("merged", ".pdf")
        assert path.parent == store.root
        prefix, stamp = path.stem.rsplit("-", 1)
        assert prefix == "merged"
        assert stamp.isdigit()
        assert path.suffix == ".pdf"
        assert path.exists()

    def test_reserve_never_hands_out_the_same_name(self, store: ArtifactStore) -> None:
        names = {store.reserve("merged", "pdf").name for _ in range(50)}
        assert len(names) == 50

    def test_batch_members_share_timestamp(self, store: ArtifactStore) -> None:
        batch, stamp = store.create_batch("pdf-images")
        assert batch.name == f"pdf-images-{stamp}"
        other, other_stamp = store.create_batch("pdf-images")
        assert other != batch
        assert other_stamp != stamp

    def test_url_for_nested_artifact(self, store: ArtifactStore) -> None:
        batch, stamp = store.create_batch("pdf-images")
        page = batch / f"page-1-{stamp}.png"
        page.write_bytes(b"img")
        assert store.url_for(page) == f"/uploads/pdf-images-{stamp}/page-1-{stamp}.png"


class TestListBySuffix:
    def test_filters_by_suffix_and_prefix(self, store: ArtifactStore) -> None:
        store.put("merged-1.pdf", b"a")
        store.put("merged-2.pdf", b"b")
        store.put("compressed-3.pdf", b"c")
        store.put("merged-4.txt", b"d")

        names = {a.name for a in store.list_by_suffix(".pdf", prefix="merged-")}
        assert names == {"merged-1.pdf", "merged-2.pdf"}

    def test_skips_directories(self, store: ArtifactStore) -> None:
        (store.root / "merged-dir.pdf").mkdir()
        assert store.list_by_suffix(".pdf") == []

    def test_missing_root_lists_nothing(self, tmp_path: Path) -> None:
        assert ArtifactStore(tmp_path / "missing").list_by_suffix(".pdf") == []


class TestResolveDownload:
    def test_relative_name(self, store: ArtifactStore) -> None:
        store.put("merged-1.pdf", b"data")
        assert resolve_download(store, "merged-1.pdf") == store.root / "merged-1.pdf"

    def test_relative_nested_path(self, store: ArtifactStore) -> None:
        batch, stamp = store.create_batch("pdf-images")
        page = batch / f"page-1-{stamp}.png"
        page.write_bytes(b"img")
        assert resolve_download(store, f"pdf-images-{stamp}/page-1-{stamp}.png") == page

    def test_absolute_path_inside_root(self, store: ArtifactStore) -> None:
        target = store.put("split-page-1-1.pdf", b"data")
        assert resolve_download(store, str(target)) == target

    def test_absolute_path_outside_root_maps_to_basename(self, store: ArtifactStore, tmp_path: Path) -> None:
        outside = tmp_path / "elsewhere" / "merged-9.pdf"
        outside.parent.mkdir()
        outside.write_bytes(b"outside")
        inside = store.put("merged-9.pdf", b"inside")

        resolved = resolve_download(store, str(outside))

        assert resolved == inside
        assert resolved.read_bytes() == b"inside"

    def test_absolute_path_outside_root_without_match_is_not_found(self, store: ArtifactStore, tmp_path: Path) -> None:
        outside = tmp_path / "secret.txt"
        outside.write_bytes(b"secret")
        with pytest.raises(ArtifactNotFound):
            resolve_download(store, str(outside))

    def test_relative_traversal_never_escapes(self, store: ArtifactStore, tmp_path: Path) -> None:
        (tmp_path / "secret.txt").write_bytes(b"secret")
        with pytest.raises(ArtifactNotFound):
            resolve_download(store, "../secret.txt")

    def test_relative_traversal_maps_to_same_named_file(self, store: ArtifactStore, tmp_path: Path) -> None:
        (tmp_path / "report.pdf").write_bytes(b"outside")
        inside = store.put("report.pdf", b"inside")
        assert resolve_download(store, "../report.pdf") == inside

    def test_falls_back_to_basename_scan(self, store: ArtifactStore) -> None:
        target = store.put("compressed-5.pdf", b"data")
        assert resolve_download(store, "old/location/compressed-5.pdf") == target

    def test_directory_is_not_downloadable(self, store: ArtifactStore) -> None:
        batch, _ = store.create_batch("pdf-images")
        with pytest.raises(ArtifactNotFound):
            resolve_download(store, batch.name)

    def test_empty_reference(self, store: ArtifactStore) -> None:
        with pytest.raises(ArtifactNotFound):
            resolve_download(store, "")

    def test_resolving_twice_returns_same_bytes(self, store: ArtifactStore) -> None:
        store.put("merged-7.pdf", b"stable")
        first = resolve_download(store, "merged-7.pdf").read_bytes()
        second = resolve_download(store, "merged-7.pdf").read_bytes()
        assert first == second == b"stable"

    def test_nul_byte_reference_is_not_found(self, store: ArtifactStore) -> None:
        store.put("abc.pdf", b"data")
        with pytest.raises(ArtifactNotFound):
            resolve_download(store, "abc\x00.pdf")
