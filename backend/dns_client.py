from dataclasses import dataclass, field
from typing import Dict, List, Optional
import logging

import requests

from config import DNS_TIMEOUT, PORKBUN_API_KEY, PORKBUN_API_URL, PORKBUN_SECRET_KEY

logger = logging.getLogger(__name__)

SRV_SERVICE = "_minecraft._tcp"


class DNSError(Exception):
    pass


@dataclass
class DNSRecord:
    id: str
    name: str
    type: str
    content: str = ""
    ttl: Optional[str] = None
    prio: Optional[str] = None


@dataclass
class DNSCleanupReport:
    srv: int = 0
    cname: int = 0
    a: int = 0
    other: int = 0
    deleted: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.srv + self.cname + self.a + self.other

    def to_dict(self) -> Dict:
        return {
            "srv": self.srv,
            "cname": self.cname,
            "a": self.a,
            "other": self.other,
            "deleted": list(self.deleted),
            "errors": list(self.errors),
        }


def record_belongs_to(record_name: str, subdomain: str, domain: str) -> bool:
    """Whether a record is one the server with ``subdomain`` owns."""
    name = (record_name or "").lower().rstrip(".")
    sub = subdomain.lower()
    dom = domain.lower()
    candidates = {
        sub,
        f"{sub}.{dom}",
        f"{SRV_SERVICE}.{sub}",
        f"{SRV_SERVICE}.{sub}.{dom}",
    }
    return name in candidates or name.startswith(f"{sub}.")


class PorkbunClient:
    """Minimal Porkbun JSON API client."""

    def __init__(self, api_key: str = PORKBUN_API_KEY, secret_key: str = PORKBUN_SECRET_KEY,
                 base_url: str = PORKBUN_API_URL, timeout: int = DNS_TIMEOUT, session=None):
        self.api_key = api_key
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.secret_key)

    def _post(self, path: str, payload: Optional[dict] = None) -> dict:
        body = {"apikey": self.api_key, "secretapikey": self.secret_key}
        body.update(payload or {})
        try:
            resp = self.session.post(f"{self.base_url}{path}", json=body, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except requests.exceptions.RequestException as e:
            raise DNSError(f"Porkbun request {path} failed: {e}") from e
        except ValueError as e:
            raise DNSError(f"Porkbun returned invalid JSON for {path}") from e
        if data.get("status") != "SUCCESS":
            raise DNSError(f"Porkbun {path}: {data.get('message') or data.get('status')}")
        return data

    def get_records(self, domain: str) -> List[DNSRecord]:
        data = self._post(f"/dns/retrieve/{domain}")
        records = []
        for r in data.get("records", []) or []:
            records.append(DNSRecord(
                id=str(r.get("id")),
                name=r.get("name", ""),
                type=(r.get("type") or "").upper(),
                content=r.get("content", ""),
                ttl=r.get("ttl"),
                prio=r.get("prio"),
            ))
        return records

    def delete_record(self, domain: str, record_id: str) -> None:
        self._post(f"/dns/delete/{domain}/{record_id}")
        logger.info(f"Deleted DNS record {record_id} from {domain}")

    def delete_service_record(self, domain: str, subdomain: str) -> None:
        """Delete the SRV record for ``subdomain`` by name rather than id."""
        self._post(f"/dns/deleteByNameType/{domain}/SRV/{SRV_SERVICE}.{subdomain}")
        logger.info(f"Deleted SRV record for {subdomain}.{domain}")

    def create_srv_record(self, domain: str, subdomain: str, port: int, target: str,
                          priority: int = 0, weight: int = 5, ttl: int = 600) -> str:
        data = self._post(f"/dns/create/{domain}", {
            "name": f"{SRV_SERVICE}.{subdomain}",
            "type": "SRV",
            "content": f"{weight} {port} {target}",
            "prio": str(priority),
            "ttl": str(ttl),
        })
        record_id = str(data.get("id"))
        logger.info(f"Created SRV record {record_id} for {subdomain}.{domain} -> {target}:{port}")
        return record_id


def cleanup_server_records(client, domain: str, subdomain: str) -> DNSCleanupReport:
    """Delete every record owned by ``subdomain``; per-record failures are collected."""
    report = DNSCleanupReport()
    for record in client.get_records(domain):
        if not record_belongs_to(record.name, subdomain, domain):
            continue
        try:
            client.delete_record(domain, record.id)
        except Exception as e:
            report.errors.append(f"{record.type} {record.name}: {e}")
            continue
        report.deleted.append(record.id)
        if record.type == "SRV":
            report.srv += 1
        elif record.type == "CNAME":
            report.cname += 1
        elif record.type in ("A", "AAAA"):
            report.a += 1
        else:
            report.other += 1
    return report
