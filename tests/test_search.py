"""Tests for the search module."""

import pytest

from devcontainer_templates.index import IndexStore
from devcontainer_templates.search import SearchField, SearchResult, search


@pytest.fixture()
def index(index_file):
    return IndexStore.load(index_file)


class TestSearch:
    """Test the search function."""

    def test_matches_id_case_insensitively(self, index):
        """Test substring matching on the id field."""
        results = search(index.iter_features(), "NODE")

        assert [r.id for r in results] == ["ghcr.io/devcontainers/features/node"]

    def test_matches_keywords(self, index):
        """Test that any keyword may match."""
        results = search(index.iter_features(), "npm")

        assert [r.id for r in results] == ["ghcr.io/devcontainers/features/node"]

    def test_matches_description(self, index):
        """Test matching inside the description."""
        results = search(index.iter_templates(), "applications")

        assert [r.id for r in results] == [
            "ghcr.io/devcontainers/templates/python",
            "ghcr.io/devcontainers/templates/javascript-node",
        ]

    def test_name_is_not_searched_by_default(self, index):
        """Test that the name field needs to be selected explicitly."""
        assert search(index.iter_templates(), "Node.js &") == []
        results = search(index.iter_templates(), "Node.js &", [SearchField.NAME])
        assert [r.name for r in results] == ["Node.js & JavaScript"]

    def test_search_is_idempotent(self, index):
        """Test that filtering twice yields the same sequence in index order."""
        entries = list(index.iter_features()) + list(index.iter_templates())

        first = search(entries, "node")
        second = search(entries, "node")

        assert first == second
        assert search(first, "node") == first
        assert [r.id for r in first] == [
            "ghcr.io/devcontainers/features/node",
            "ghcr.io/devcontainers/templates/javascript-node",
        ]

    def test_field_restriction(self, index):
        """Test restricting the fields searched."""
        assert search(index.iter_features(), "pip", [SearchField.ID]) == []
        assert len(search(index.iter_features(), "pip", ["keywords"])) == 1

    def test_deprecated_excluded_by_default(self, index):
        """Test that deprecated entries are filtered unless requested."""
        assert [r.id for r in search(index.iter_templates(), "python")] == [
            "ghcr.io/devcontainers/templates/python",
        ]
        assert [r.id for r in search(index.iter_templates(), "python", include_deprecated=True)] == [
            "ghcr.io/devcontainers/templates/python",
            "ghcr.io/legacy/templates/python-old",
        ]

    def test_no_results(self, index):
        """Test a query that matches nothing."""
        assert search(index.iter_templates(), "haskell") == []


class TestSearchResult:
    """Test SearchResult."""

    def test_from_entry(self, index):
        """Test converting an entry to a display record."""
        result = SearchResult.from_entry(index.find("ghcr.io/devcontainers/features/node"))

        assert result.collection == "feature"
        assert result.version == "1.3.0"
        assert result.keywords == ["javascript", "npm"]
        assert '"collection":"feature"' in result.model_dump_json()
