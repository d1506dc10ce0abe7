from datetime import date
from typing import Dict, Optional
import json
import re

import yaml

from config import SERVER_FOLDERS, SERVER_INTERNAL_PORT, SERVERS_ROOT


def owner_folder(owner_email: str) -> str:
    local = (owner_email or "unknown").split("@", 1)[0].lower()
    return re.sub(r"[^a-z0-9._-]", "_", local) or "unknown"


def server_root(owner_email: str, server_id: str) -> str:
    return f"{SERVERS_ROOT.as_posix().rstrip('/')}/{owner_folder(owner_email)}/{server_id}"


def archive_root(server_id: str, when: Optional[date] = None) -> str:
    stamp = (when or date.today()).isoformat()
    return f"{SERVERS_ROOT.as_posix().rstrip('/')}/{server_id}-deleted-{stamp}"


def layout_folders(root: str):
    return [f"{root}/{name}" for name in SERVER_FOLDERS]


# ==================== server.properties ====================

def parse_properties(text: str) -> Dict[str, str]:
    props: Dict[str, str] = {}
    for line in (text or "").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        props[key.strip()] = value.strip()
    return props


def render_properties(props: Dict[str, object]) -> str:
    lines = ["#Minecraft server properties"]
    for key, value in props.items():
        if isinstance(value, bool):
            value = "true" if value else "false"
        lines.append(f"{key}={value}")
    return "\n".join(lines) + "\n"


def merge_properties(text: str, updates: Dict[str, object]) -> str:
    """Apply ``updates`` to an existing server.properties, keeping other keys in order."""
    props: Dict[str, object] = dict(parse_properties(text))
    props.update(updates)
    return render_properties(props)


def initial_properties(server_name: str, rcon_port: Optional[int], overrides: Optional[dict] = None) -> Dict[str, object]:
    props: Dict[str, object] = {
        "server-port": SERVER_INTERNAL_PORT,
        "motd": server_name,
        "online-mode": True,
        "max-players": 20,
        "difficulty": "normal",
        "gamemode": "survival",
        "enable-rcon": bool(rcon_port),
    }
    if rcon_port:
        # RCON listens on the container default; rcon_port is the host mapping
        props["rcon.port"] = 25575
    props.update(overrides or {})
    return props


def initial_files(server_name: str, rcon_port: Optional[int], overrides: Optional[dict] = None) -> Dict[str, str]:
    """Files written into a fresh server root, keyed by relative path."""
    empty = json.dumps([], indent=2)
    return {
        "server.properties": render_properties(initial_properties(server_name, rcon_port, overrides)),
        "eula.txt": "eula=false\n",
        "whitelist.json": empty,
        "ops.json": empty,
        "banned-players.json": empty,
        "banned-ips.json": empty,
    }


# ==================== YAML ====================

def deep_merge(base: dict, patch: dict) -> dict:
    merged = dict(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def merge_yaml(text: str, patch: dict) -> str:
    current = yaml.safe_load(text or "") or {}
    if not isinstance(current, dict):
        current = {}
    return yaml.safe_dump(deep_merge(current, patch), sort_keys=False, default_flow_style=False)
