import zipfile

import pytest

from config import PublicationConfig
from tests.fake_transport import FakeControlProvider


@pytest.fixture
def site_dir(tmp_path):
    """
    Directory source fixture.

    Structure:
    tmp/
    ├── secret.txt
    └── site/
        ├── index.html
        ├── docs/
        │   └── a.txt
        └── empty/
    """
    (tmp_path / "secret.txt").write_text("SENSITIVE DATA")
    site = tmp_path / "site"
    site.mkdir()
    (site / "index.html").write_text("<html>Hello</html>")
    (site / "docs").mkdir()
    (site / "docs" / "a.txt").write_text("alpha")
    (site / "empty").mkdir()
    return site


@pytest.fixture
def report_file(tmp_path):
    """A single file with a sibling that must stay hidden."""
    folder = tmp_path / "tmp"
    folder.mkdir()
    (folder / "notes.txt").write_text("private notes")
    report = folder / "report.pdf"
    report.write_bytes(b"%PDF-1.4 report")
    return report


@pytest.fixture
def site_zip(tmp_path):
    archive = tmp_path / "site.zip"
    with zipfile.ZipFile(archive, 'w') as zf:
        zf.writestr("index.html", "<html>Zipped</html>")
        zf.writestr("docs/readme.txt", "read me")
        zf.writestr("docs/deep/b.txt", "beta")
    return archive


@pytest.fixture
def provider():
    return FakeControlProvider()


@pytest.fixture
def make_config():
    def _make(path, **kwargs):
        return PublicationConfig(path=path, control='tcp://127.0.0.1:9051', **kwargs)
    return _make
