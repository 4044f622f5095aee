"""
Tests for the Querytrail client facade (sync and async).
"""

import os

import pytest

from querytrail import Querytrail, QuerytrailConfig, health
from querytrail.core.document import AnalysisDocument
from querytrail.core.mappers import encode_query_text
from querytrail.exceptions import DocumentError, DocumentNotFoundError, IndexNotFoundError


SMALL_DOC = AnalysisDocument(
    call_relations=(("f (x/repository/F.kt:1)", "g (x/service/G.kt:2)"), ("g (x/service/G.kt:2)",)),
    queries=((encode_query_text("SELECT id FROM orders"), "f (x/repository/F.kt:1)"),),
)


@pytest.fixture
def client(config) -> Querytrail:
    return Querytrail(config=config)


@pytest.fixture
def analysed(client, sample_project):
    client.analyse(sample_project)
    return sample_project


# =============================================================================
# Construction
# =============================================================================

class TestConstruction:

    def test_explicit_config(self, config):
        assert Querytrail(config=config).config is config

    def test_keyword_overrides(self, monkeypatch):
        monkeypatch.delenv("QUERYTRAIL_AMBIGUOUS_OWNER", raising=False)
        client = Querytrail(seed_layer="/dao/")
        assert client.config.seed_layer == "/dao/"
        assert client.config.ambiguous_owner_policy == "first"

    def test_validate_on_init(self):
        from querytrail.exceptions import ConfigError

        with pytest.raises(ConfigError):
            Querytrail(config=QuerytrailConfig(seed_layer=""), validate_on_init=True)

    def test_health(self, client):
        h = client.health()
        assert h["seed_layer"] == "/repository/"
        assert "version" in h
        assert health(client.config)["ambiguous_owner_policy"] == "first"


# =============================================================================
# Analyse + search
# =============================================================================

class TestAnalyseAndSearch:

    def test_analyse_stores_document(self, client, sample_project):
        result = client.analyse(sample_project)
        stored = sample_project / ".querytrail" / "analysis.json"
        assert result.stats["document"] == str(stored.resolve())
        assert client.load_document(sample_project) == result.document

    def test_analyse_without_store(self, client, sample_project):
        client.analyse(sample_project, store=False)
        with pytest.raises(DocumentNotFoundError):
            client.load_document(sample_project)

    def test_search_users(self, client, analysed):
        hits = client.search("users", path=analysed)
        assert [h.owner.split(" ")[0] for h in hits] == ["findById", "updateName"]
        assert all(h.spans for h in hits)

    def test_search_all(self, client, analysed):
        assert len(client.search(path=analysed)) == 2

    def test_search_tree_reaches_controllers(self, client, analysed):
        hit = client.search("SELECT", path=analysed)[0]
        labels = [n.label.split(" ")[0] for n, _ in hit.tree.walk()]
        assert labels == ["findById", "getUser", "show", "rename", "update"]

    def test_search_max_depth(self, client, analysed):
        hit = client.search("SELECT", path=analysed, max_depth=1)[0]
        assert max(d for _, d in hit.tree.walk()) == 1

    def test_tree(self, client, analysed, kotlin_path):
        label = f"rename ({kotlin_path(analysed, 'service', 'UserService.kt')}:8)"
        node = client.tree(label, path=analysed)
        assert [c.label.split(" ")[0] for c in node.children] == ["update"]

    def test_common_path(self, client, analysed):
        expected = str((analysed / "src/main/kotlin/com/example/user").resolve()).replace("\\", "/")
        assert client.common_path(analysed) == expected

    def test_search_without_document(self, client, tmp_path):
        with pytest.raises(DocumentNotFoundError):
            client.search("x", path=tmp_path)


# =============================================================================
# Import
# =============================================================================

class TestImportDocument:

    def test_import_makes_document_current(self, client, tmp_path):
        client.import_document(SMALL_DOC.to_json(), path=tmp_path)
        hits = client.search("orders", path=tmp_path)
        assert [h.owner for h in hits] == ["f (x/repository/F.kt:1)"]

    def test_import_rejects_malformed(self, client, tmp_path):
        with pytest.raises(DocumentError):
            client.import_document("{", path=tmp_path)

    def test_engine_is_cached(self, client, tmp_path):
        client.import_document(SMALL_DOC.to_json(), path=tmp_path)
        first = client._get_engine(tmp_path.resolve())
        assert client._get_engine(tmp_path.resolve()) is first

    def test_engine_rebuilt_after_new_document(self, client, tmp_path):
        client.import_document(SMALL_DOC.to_json(), path=tmp_path)
        assert len(client.search("orders", path=tmp_path)) == 1

        client.import_document(AnalysisDocument().to_json(), path=tmp_path)
        stored = tmp_path / ".querytrail" / "analysis.json"
        st = stored.stat()
        os.utime(stored, ns=(st.st_atime_ns, st.st_mtime_ns + 1_000_000_000))
        assert client.search("orders", path=tmp_path) == []


# =============================================================================
# Stats
# =============================================================================

class TestStats:

    def test_stats_after_index(self, client, sample_project):
        client.index(sample_project)
        s = client.stats(sample_project)
        assert s == {"indexed_files": 3, "indexed_functions": 6, "call_edges": 5}

    def test_stats_without_index(self, client, tmp_path):
        with pytest.raises(IndexNotFoundError):
            client.stats(tmp_path)

    def test_index_not_found_is_file_not_found(self, client, tmp_path):
        with pytest.raises(FileNotFoundError):
            client.stats(tmp_path)


# =============================================================================
# Async variants
# =============================================================================

class TestAsync:

    @pytest.mark.asyncio
    async def test_aanalyse_and_asearch(self, client, sample_project):
        result = await client.aanalyse(sample_project)
        assert result.stats["queries"] == 2
        hits = await client.asearch("users", path=sample_project)
        assert len(hits) == 2

    @pytest.mark.asyncio
    async def test_aindex_and_astats(self, client, sample_project):
        result = await client.aindex(sample_project)
        assert result.functions_found == 6
        s = await client.astats(sample_project)
        assert s["indexed_functions"] == 6

    @pytest.mark.asyncio
    async def test_aimport_and_atree(self, client, tmp_path):
        await client.aimport_document(SMALL_DOC.to_json(), path=tmp_path)
        node = await client.atree("f (x/repository/F.kt:1)", path=tmp_path)
        assert [c.label for c in node.children] == ["g (x/service/G.kt:2)"]

    @pytest.mark.asyncio
    async def test_async_errors_propagate(self, client, tmp_path):
        with pytest.raises(IndexNotFoundError):
            await client.astats(tmp_path)
