from pathlib import Path
import os


APP_NAME = os.getenv("APP_NAME", "Fleetgate")
APP_VERSION = os.getenv("APP_VERSION", "0.1.0")

DATABASE_URL = os.getenv("DATABASE_URL") or "sqlite:///./fleetgate.db"

# Root of the shared file store. Server folders live under SERVERS_ROOT,
# proxy configuration files under PROXIES_ROOT.
FILE_STORE_ROOT = Path(os.getenv("FILE_STORE_ROOT", "/data")).resolve()
SERVERS_ROOT = Path(os.getenv("SERVERS_ROOT", "/servers"))
PROXIES_ROOT = Path(os.getenv("PROXIES_ROOT", "/proxies"))

# When false and archiving is skipped, server folders are left in place on deletion.
DELETE_SERVER_FOLDERS = os.getenv("DELETE_SERVER_FOLDERS", "true").lower() == "true"


# ==================== Ports ====================
# Single authoritative bound per port kind. Game ports are used both for
# automatic allocation and for admin reservations; RCON ports are only ever
# allocated automatically.
GAME_PORT_START = int(os.getenv("GAME_PORT_START", "25565"))
GAME_PORT_END = int(os.getenv("GAME_PORT_END", "25595"))
RCON_PORT_START = int(os.getenv("RCON_PORT_START", "35565"))
RCON_PORT_END = int(os.getenv("RCON_PORT_END", "35595"))

# Well known infrastructure ports that must never be handed out.
IMPORTANT_PORTS = frozenset({
    22, 80, 443, 3000, 3306, 5000, 5432, 6379, 8080, 8443, 9000, 9443, 27017, 30001,
})

# Port the game server listens on inside its container.
SERVER_INTERNAL_PORT = 25565


# ==================== Containers ====================
# Comma separated "name=docker_url" pairs; "local" uses the environment socket.
DOCKER_ENVIRONMENTS = os.getenv("DOCKER_ENVIRONMENTS", "local")
DEFAULT_ENVIRONMENT = os.getenv("DEFAULT_ENVIRONMENT", "local")
DOCKER_TIMEOUT = int(os.getenv("DOCKER_TIMEOUT", "30"))
CONTAINER_PREFIX = "mc-"
SERVER_IMAGE = os.getenv("SERVER_IMAGE", "itzg/minecraft-server:latest")
PROXY_LABEL = "fleetgate.proxy.type"
STOP_TIMEOUT = int(os.getenv("STOP_TIMEOUT", "30"))
DOCKER_NETWORK = os.getenv("DOCKER_NETWORK", "fleetgate")


# ==================== Servers ====================
SUPPORTED_SERVER_TYPES = (
    "vanilla", "paper", "purpur", "spigot", "bukkit", "fabric", "forge", "neoforge",
)
MIN_MEMORY_MB = int(os.getenv("MIN_MEMORY_MB", "512"))
MAX_MEMORY_MB = int(os.getenv("MAX_MEMORY_MB", "16384"))
DOWNLOAD_TIMEOUT = int(os.getenv("DOWNLOAD_TIMEOUT", "120"))
SERVER_FOLDERS = ("data", "plugins", "mods", "worlds", "backups", "config", "logs")

# Deployment waits for the server layout to exist before editing it.
FILE_READY_MAX_ATTEMPTS = int(os.getenv("FILE_READY_MAX_ATTEMPTS", "24"))
FILE_READY_INTERVAL = float(os.getenv("FILE_READY_INTERVAL", "5"))


# ==================== DNS ====================
DNS_DOMAIN = os.getenv("DNS_DOMAIN", "")
PORKBUN_API_URL = os.getenv("PORKBUN_API_URL", "https://api.porkbun.com/api/json/v3")
PORKBUN_API_KEY = os.getenv("PORKBUN_API_KEY", "")
PORKBUN_SECRET_KEY = os.getenv("PORKBUN_SECRET_KEY", "")
DNS_TIMEOUT = int(os.getenv("DNS_TIMEOUT", "10"))
DNS_TARGET_HOST = os.getenv("DNS_TARGET_HOST", "")


# ==================== Proxies ====================
PROXIES_CONFIG_PATH = Path(os.getenv("PROXIES_CONFIG_PATH", "proxies.yaml"))
FORWARDING_SECRET = os.getenv("VELOCITY_FORWARDING_SECRET", "")
PROXY_PROBE_TIMEOUT = float(os.getenv("PROXY_PROBE_TIMEOUT", "5"))
HEALTH_WORKERS = int(os.getenv("HEALTH_WORKERS", "8"))

VELOCITY_ENABLED = os.getenv("VELOCITY_ENABLED", "true").lower() == "true"
BUNGEECORD_ENABLED = os.getenv("BUNGEECORD_ENABLED", "false").lower() == "true"
WATERFALL_ENABLED = os.getenv("WATERFALL_ENABLED", "false").lower() == "true"
RUSTY_CONNECTOR_ENABLED = os.getenv("RUSTY_CONNECTOR_ENABLED", "false").lower() == "true"

# RustyConnector servers only ever see a reference to the password file.
REDIS_HOST = os.getenv("REDIS_HOST", "redis")
REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
REDIS_PASSWORD_FILE = os.getenv("REDIS_PASSWORD_FILE", "/run/secrets/redis_password")


# ==================== Bulk / scheduled ====================
BULK_MAX_WORKERS = int(os.getenv("BULK_MAX_WORKERS", "5"))
INTERNAL_API_KEY = os.getenv("INTERNAL_API_KEY", "")

# ==================== Auth ====================
SECRET_KEY = os.getenv("SECRET_KEY", "")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "1440"))
