from dataclasses import dataclass
from typing import Callable, Dict, Optional
import hashlib
import logging
import xml.etree.ElementTree as ET

import requests

from config import DOWNLOAD_TIMEOUT

logger = logging.getLogger(__name__)

HEADERS = {
    "User-Agent": "Fleetgate/0.1",
    "Accept": "application/java-archive, application/octet-stream, */*",
}
MIN_JAR_SIZE = 1024 * 5


@dataclass
class RuntimeArtifact:
    filename: str
    url: str
    content: bytes = b""
    build: Optional[str] = None

    @property
    def sha256(self) -> str:
        return hashlib.sha256(self.content).hexdigest()


def get_paper_download_url(version: str, session=requests) -> Optional[RuntimeArtifact]:
    base = "https://api.papermc.io/v2/projects/paper"
    v = session.get(f"{base}/versions/{version}", timeout=15)
    if v.status_code == 404:
        logger.warning(f"Paper version {version} not found (404)")
        return None
    v.raise_for_status()
    builds = v.json().get("builds") or []
    if not builds:
        return None
    latest = builds[-1]
    b = session.get(f"{base}/versions/{version}/builds/{latest}", timeout=15)
    b.raise_for_status()
    app = (b.json().get("downloads") or {}).get("application") or {}
    jar_name = app.get("name") or f"paper-{version}-{latest}.jar"
    url = f"{base}/versions/{version}/builds/{latest}/downloads/{jar_name}"
    return RuntimeArtifact("server.jar", url, build=str(latest))


def get_purpur_download_url(version: str, session=requests) -> Optional[RuntimeArtifact]:
    resp = session.get(f"https://api.purpurmc.org/v2/purpur/{version}", timeout=15)
    resp.raise_for_status()
    builds = (resp.json().get("builds") or {}).get("all") or []
    if not builds:
        return None
    latest = builds[-1]
    url = f"https://api.purpurmc.org/v2/purpur/{version}/{latest}/download"
    return RuntimeArtifact("server.jar", url, build=str(latest))


def get_vanilla_download_url(version: str, session=requests) -> Optional[RuntimeArtifact]:
    manifest = session.get("https://piston-meta.mojang.com/mc/game/version_manifest_v2.json", timeout=15)
    manifest.raise_for_status()
    entry = next((v for v in manifest.json().get("versions", []) if v.get("id") == version), None)
    if not entry:
        return None
    detail = session.get(entry["url"], timeout=15)
    detail.raise_for_status()
    server = (detail.json().get("downloads") or {}).get("server") or {}
    if not server.get("url"):
        return None
    return RuntimeArtifact("server.jar", server["url"])


def get_fabric_download_url(version: str, session=requests) -> Optional[RuntimeArtifact]:
    meta = "https://meta.fabricmc.net/v2/versions"
    loaders = session.get(f"{meta}/loader/{version}", timeout=15)
    loaders.raise_for_status()
    loader_list = loaders.json() or []
    if not loader_list:
        return None
    loader = loader_list[0]["loader"]["version"]
    installers = session.get(f"{meta}/installer", timeout=15)
    installers.raise_for_status()
    stable = [i for i in installers.json() or [] if i.get("stable")]
    if not stable:
        return None
    installer = stable[0]["version"]
    url = f"{meta}/loader/{version}/{loader}/{installer}/server/jar"
    return RuntimeArtifact("fabric-server-launch.jar", url, build=loader)


def get_forge_download_url(version: str, session=requests) -> Optional[RuntimeArtifact]:
    resp = session.get("https://files.minecraftforge.net/net/minecraftforge/forge/promotions_slim.json", timeout=15)
    resp.raise_for_status()
    promos = resp.json().get("promos", {})
    forge_version = promos.get(f"{version}-latest") or promos.get(f"{version}-recommended")
    if not forge_version:
        return None
    url = (f"https://maven.minecraftforge.net/net/minecraftforge/forge/{version}-{forge_version}/"
           f"forge-{version}-{forge_version}-installer.jar")
    return RuntimeArtifact("forge-installer.jar", url, build=forge_version)


def get_neoforge_download_url(version: str, session=requests) -> Optional[RuntimeArtifact]:
    resp = session.get("https://maven.neoforged.net/releases/net/neoforged/neoforge/maven-metadata.xml", timeout=15)
    resp.raise_for_status()
    root = ET.fromstring(resp.text)
    versions = [v.text for v in root.findall(".//version") if v.text]
    # NeoForge versions drop the leading "1." of the game version
    prefix = version[2:] if version.startswith("1.") else version
    for v in reversed(versions):
        if v.startswith(prefix):
            url = f"https://maven.neoforged.net/releases/net/neoforged/neoforge/{v}/neoforge-{v}-installer.jar"
            return RuntimeArtifact("neoforge-installer.jar", url, build=v)
    return None


RESOLVERS: Dict[str, Callable[..., Optional[RuntimeArtifact]]] = {
    "paper": get_paper_download_url,
    "purpur": get_purpur_download_url,
    "vanilla": get_vanilla_download_url,
    "fabric": get_fabric_download_url,
    "forge": get_forge_download_url,
    "neoforge": get_neoforge_download_url,
}


def _looks_like_jar(data: bytes) -> bool:
    return data[:2] == b"PK"


class ArtifactDownloader:
    """Resolves and fetches the runtime jar for a server type and version."""

    def __init__(self, session=None, timeout: int = DOWNLOAD_TIMEOUT):
        self.session = session or requests.Session()
        self.timeout = timeout

    def resolve(self, server_type: str, version: str) -> Optional[RuntimeArtifact]:
        resolver = RESOLVERS.get(server_type.lower())
        if resolver is None:
            # spigot/bukkit are built by the container image on first start
            logger.info(f"No direct download for {server_type}; the image will provide it")
            return None
        artifact = resolver(version, session=self.session)
        if artifact is None:
            raise ValueError(f"No {server_type} build found for Minecraft {version}")
        return artifact

    def fetch(self, server_type: str, version: str) -> Optional[RuntimeArtifact]:
        artifact = self.resolve(server_type, version)
        if artifact is None:
            return None
        logger.info(f"Downloading {server_type} {version} from {artifact.url}")
        with self.session.get(artifact.url, headers=HEADERS, stream=True, timeout=self.timeout,
                              allow_redirects=True) as r:
            r.raise_for_status()
            content_type = (r.headers.get("content-type") or "").lower()
            chunks = []
            for chunk in r.iter_content(chunk_size=1024 * 128):
                if chunk:
                    chunks.append(chunk)
        data = b"".join(chunks)

        if len(data) < MIN_JAR_SIZE:
            raise ValueError(f"Downloaded file is too small ({len(data)} bytes), expected at least 5KB")
        if not _looks_like_jar(data):
            if "text/html" in content_type or "application/json" in content_type:
                preview = data[:200].decode("utf-8", errors="replace")
                raise ValueError(f"Download URL returned non-JAR content ({content_type}): {preview}")
            raise ValueError("Downloaded file is not a valid JAR (ZIP) archive")

        artifact.content = data
        logger.info(f"Download complete, size: {len(data)} bytes, sha256 {artifact.sha256[:12]}")
        return artifact
