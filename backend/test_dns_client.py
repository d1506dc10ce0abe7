import pytest
import requests

from conftest import FakeDNSClient
from dns_client import DNSError, PorkbunClient, cleanup_server_records, record_belongs_to


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} error")

    def json(self):
        return self.payload


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.posts = []

    def post(self, url, json=None, timeout=None):
        self.posts.append((url, json))
        return self.responses.pop(0)


def test_record_ownership():
    assert record_belongs_to("survival.example.net", "survival", "example.net")
    assert record_belongs_to("_minecraft._tcp.survival.example.net.", "Survival", "example.net")
    assert not record_belongs_to("survival2.example.net", "survival", "example.net")
    assert not record_belongs_to("_minecraft._tcp.creative.example.net", "survival", "example.net")


def test_cleanup_counts_by_type_and_keeps_going():
    dns = FakeDNSClient()
    dns.add("_minecraft._tcp.survival.example.net", "SRV")
    dns.add("survival.example.net", "CNAME")
    dns.add("survival.example.net", "TXT")
    dns.add("creative.example.net", "A")

    report = cleanup_server_records(dns, "example.net", "survival")

    assert (report.srv, report.cname, report.a, report.other) == (1, 1, 0, 1)
    assert report.total == 3
    assert [r.name for r in dns.records] == ["creative.example.net"]
    assert report.to_dict()["errors"] == []


def test_cleanup_collects_per_record_errors():
    dns = FakeDNSClient()
    dns.add("survival.example.net", "A")
    dns.delete_error = RuntimeError("rate limited")

    report = cleanup_server_records(dns, "example.net", "survival")

    assert report.total == 0
    assert report.errors == ["A survival.example.net: rate limited"]


def test_porkbun_create_srv_record():
    session = FakeSession(FakeResponse({"status": "SUCCESS", "id": 123456}))
    client = PorkbunClient("pk", "sk", "https://dns.example.test/v3/", session=session)

    record_id = client.create_srv_record("example.net", "survival", 25566, "play.example.net")

    assert record_id == "123456"
    url, body = session.posts[0]
    assert url == "https://dns.example.test/v3/dns/create/example.net"
    assert body["name"] == "_minecraft._tcp.survival"
    assert body["content"] == "5 25566 play.example.net"
    assert body["apikey"] == "pk"


def test_porkbun_errors_become_dns_errors():
    session = FakeSession(FakeResponse({"status": "ERROR", "message": "Invalid API key"}),
                          FakeResponse({}, status_code=503))
    client = PorkbunClient("pk", "sk", session=session)

    with pytest.raises(DNSError, match="Invalid API key"):
        client.get_records("example.net")
    with pytest.raises(DNSError):
        client.delete_record("example.net", "1")


def test_porkbun_get_records():
    session = FakeSession(FakeResponse({"status": "SUCCESS", "records": [
        {"id": 7, "name": "survival.example.net", "type": "cname", "content": "play.example.net"},
    ]}))
    records = PorkbunClient("pk", "sk", session=session).get_records("example.net")
    assert records[0].id == "7"
    assert records[0].type == "CNAME"
    assert not PorkbunClient("", "").configured


def test_porkbun_delete_service_record_by_name():
    session = FakeSession(FakeResponse({"status": "SUCCESS"}))
    PorkbunClient("pk", "sk", "https://dns.example.test/v3", session=session).delete_service_record(
        "example.net", "survival")
    assert session.posts[0][0] == "https://dns.example.test/v3/dns/deleteByNameType/example.net/SRV/_minecraft._tcp.survival"
