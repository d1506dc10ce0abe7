import pytest

from download_manager import ArtifactDownloader

JAR = b"PK\x03\x04" + b"\0" * 8000


class FakeResponse:
    def __init__(self, payload=None, content=b"", status_code=200, headers=None):
        self.payload = payload
        self.content = content
        self.status_code = status_code
        self.headers = headers or {}

    def raise_for_status(self):
        if self.status_code >= 400:
            raise RuntimeError(f"HTTP {self.status_code}")

    def json(self):
        return self.payload

    def iter_content(self, chunk_size=1024):
        for i in range(0, len(self.content), chunk_size):
            yield self.content[i:i + chunk_size]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeSession:
    def __init__(self, routes):
        self.routes = routes
        self.requested = []

    def get(self, url, **kwargs):
        self.requested.append(url)
        for prefix, response in self.routes.items():
            if url.startswith(prefix):
                return response
        return FakeResponse(status_code=404)


PAPER = "https://api.papermc.io/v2/projects/paper/versions/1.21.1"


def test_fetches_latest_paper_build():
    session = FakeSession({
        f"{PAPER}/builds/130/downloads/": FakeResponse(content=JAR),
        f"{PAPER}/builds/130": FakeResponse({"downloads": {"application": {"name": "paper-1.21.1-130.jar"}}}),
        PAPER: FakeResponse({"builds": [128, 129, 130]}),
    })

    artifact = ArtifactDownloader(session=session).fetch("paper", "1.21.1")

    assert artifact.filename == "server.jar"
    assert artifact.build == "130"
    assert artifact.url.endswith("/builds/130/downloads/paper-1.21.1-130.jar")
    assert artifact.content == JAR
    assert len(artifact.sha256) == 64


def test_unknown_paper_version():
    downloader = ArtifactDownloader(session=FakeSession({}))
    with pytest.raises(ValueError, match="No paper build"):
        downloader.fetch("paper", "0.0.1")


def test_image_provided_types_return_none():
    session = FakeSession({})
    assert ArtifactDownloader(session=session).fetch("spigot", "1.21.1") is None
    assert session.requested == []


def test_rejects_html_error_pages():
    session = FakeSession({
        f"{PAPER}/builds/130/downloads/": FakeResponse(content=b"<html>" + b" " * 6000,
                                                       headers={"content-type": "text/html"}),
        f"{PAPER}/builds/130": FakeResponse({"downloads": {}}),
        PAPER: FakeResponse({"builds": [130]}),
    })
    with pytest.raises(ValueError, match="non-JAR"):
        ArtifactDownloader(session=session).fetch("paper", "1.21.1")


def test_rejects_truncated_downloads():
    session = FakeSession({
        f"{PAPER}/builds/130/downloads/": FakeResponse(content=b"PK"),
        f"{PAPER}/builds/130": FakeResponse({"downloads": {}}),
        PAPER: FakeResponse({"builds": [130]}),
    })
    with pytest.raises(ValueError, match="too small"):
        ArtifactDownloader(session=session).fetch("paper", "1.21.1")
