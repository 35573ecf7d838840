"""Tests for the per-unit sidecar store."""

import json

import pytest

from models.errors import SidecarPathError
from utils.sidecar import ANALYSIS, SidecarStore, preview_name


@pytest.fixture
def controller(tmp_path):
    path = tmp_path / "app" / "controllers" / "blog" / "posts_controller.rb"
    path.parent.mkdir(parents=True)
    path.write_text("class PostsController; end\n")
    return path


class TestSidecarStore:
    def test_directory_is_hidden_and_keyed_by_stem(self, tmp_path, controller):
        store = SidecarStore(tmp_path, ".harden")
        assert store.directory(controller) == controller.parent / ".harden" / "posts_controller"

    def test_write_creates_directories(self, tmp_path, controller):
        store = SidecarStore(tmp_path, ".harden")
        target = store.write(controller, ANALYSIS, "{}")
        assert target.is_file()
        assert target == controller.parent / ".harden" / "posts_controller" / "analysis.json"

    def test_dicts_are_written_as_json(self, tmp_path, controller):
        store = SidecarStore(tmp_path, ".harden")
        store.write(controller, ANALYSIS, {"findings": [{"id": "finding_001"}]})
        assert json.loads(store.read(controller, ANALYSIS)) == {"findings": [{"id": "finding_001"}]}

    def test_trailing_newline_added_once(self, tmp_path, controller):
        store = SidecarStore(tmp_path, ".harden")
        store.write(controller, "a.txt", "no newline")
        store.write(controller, "b.txt", "has newline\n")
        assert store.read(controller, "a.txt") == "no newline\n"
        assert store.read(controller, "b.txt") == "has newline\n"

    def test_read_missing_returns_none(self, tmp_path, controller):
        store = SidecarStore(tmp_path, ".harden")
        assert store.read(controller, ANALYSIS) is None

    def test_units_never_share_a_directory(self, tmp_path, controller):
        other = controller.parent / "comments_controller.rb"
        other.write_text("class CommentsController; end\n")
        store = SidecarStore(tmp_path, ".harden")
        store.write(controller, ANALYSIS, {"unit": "posts"})
        store.write(other, ANALYSIS, {"unit": "comments"})
        assert json.loads(store.read(controller, ANALYSIS)) == {"unit": "posts"}
        assert json.loads(store.read(other, ANALYSIS)) == {"unit": "comments"}

    def test_source_file_is_untouched(self, tmp_path, controller):
        store = SidecarStore(tmp_path, ".harden")
        store.write(controller, preview_name(controller), "class Hardened; end")
        assert controller.read_text() == "class PostsController; end\n"

    def test_refuses_to_write_outside_root(self, tmp_path):
        root = tmp_path / "project"
        root.mkdir()
        outside = tmp_path / "elsewhere" / "x_controller.rb"
        outside.parent.mkdir()
        outside.write_text("")
        store = SidecarStore(root, ".harden")
        with pytest.raises(SidecarPathError):
            store.write(outside, ANALYSIS, "{}")
        assert not (outside.parent / ".harden").exists()


def test_preview_name_keeps_source_suffix():
    assert preview_name("/x/app/controllers/posts_controller.rb") == "hardened_preview.rb"
    assert preview_name("/x/views/items.py") == "hardened_preview.py"
