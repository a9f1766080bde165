# tests/test_project_loader.py
"""
Test project loaders.
"""

import os

import pytest

from delivery.errors import DeliveryError
from delivery.fulfillment.project import GitProjectLoader, LocalProjectLoader

from conftest import SHA, make_goal


class TestLocalProjectLoader:
    """Tests for serving projects from a local directory."""

    def test_shared_root(self, tmp_path):
        with LocalProjectLoader(str(tmp_path)).load(make_goal("build")) as path:
            assert path == str(tmp_path)

    def test_per_repo(self, tmp_path):
        """Each repository gets its own directory."""
        with LocalProjectLoader(str(tmp_path), per_repo=True).load(make_goal("build")) as path:
            assert path == os.path.join(str(tmp_path), "atomist", "sample-app")
            assert os.path.isdir(path)


class TestGitProjectLoader:
    """Tests for cloning projects."""

    def test_clone_and_checkout(self, tmp_path, monkeypatch):
        """The goal sha is checked out; the clone is removed afterwards."""
        commands = []
        loader = GitProjectLoader(url_template="https://git.example.com/{owner}/{name}.git",
                                  clone_root=str(tmp_path))
        monkeypatch.setattr(loader, "_git", commands.append)

        with loader.load(make_goal("build")) as path:
            assert os.path.isdir(path)

        assert commands == [
            ["clone", "--quiet", "https://git.example.com/atomist/sample-app.git", path],
            ["-C", path, "checkout", "--quiet", SHA],
        ]
        assert not os.path.exists(path)

    def test_git_failure(self, tmp_path):
        """A missing git binary is a delivery error and leaves nothing behind."""
        loader = GitProjectLoader(clone_root=str(tmp_path), git_binary=str(tmp_path / "no-git"))

        with pytest.raises(DeliveryError, match="git clone failed"):
            with loader.load(make_goal("build")):
                pass

        assert os.listdir(tmp_path) == []
