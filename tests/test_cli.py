from __future__ import annotations

import pytest
from typer.testing import CliRunner

from ragindex import main
from ragindex.schemas import TenantContext, UploadedFile

from tests.conftest import COURSE_DOC

runner = CliRunner()


@pytest.fixture
def cli_services(services, app_config, monkeypatch):
    # fixtures own teardown
    monkeypatch.setattr(services, "close", lambda: None)
    monkeypatch.setattr(main, "_config", lambda path: app_config)
    monkeypatch.setattr(main, "_services", lambda cfg: services)
    return services


def test_ingest_command(cli_services, tmp_path):
    doc = tmp_path / "neural.md"
    doc.write_text(COURSE_DOC)
    result = runner.invoke(main.app, ["ingest", str(doc), "--org", "org-1", "--course", "ml-101"])
    assert result.exit_code == 0, result.output
    assert "Ingested" in result.output
    assert cli_services.deduplication_stats("org-1").original_files == 1


def test_search_command_json(cli_services):
    cli_services.ingest(UploadedFile(filename="n.md", content=COURSE_DOC.encode()), TenantContext(organization_id="org-1", course_id="ml-101"))
    result = runner.invoke(main.app, ["search", "dropout", "--org", "org-1", "--json"])
    assert result.exit_code == 0, result.output
    assert '"search_type": "hybrid"' in result.stdout


def test_delete_unknown_document_exits_nonzero(cli_services):
    result = runner.invoke(main.app, ["delete", "nope"])
    assert result.exit_code == 1
    assert "DocumentNotFoundError" in result.output


def test_corpus_export(cli_services, tmp_path):
    cli_services.ingest(UploadedFile(filename="n.md", content=COURSE_DOC.encode()), TenantContext(organization_id="org-1", course_id="ml-101"))
    out = tmp_path / "corpus.json"
    result = runner.invoke(main.app, ["corpus-export", str(out)])
    assert result.exit_code == 0, result.output
    assert out.exists()
    assert '"total_chunks"' in out.read_text()
