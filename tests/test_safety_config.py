import json

import pytest

from membership_resolver.config import ResolverConfig, CERT_PASSWORD_ENV
from membership_resolver.resolver import FailureMode, Strategy
from membership_resolver.safety.guardian import SafetyGuardian, SafetyViolation


def test_guardian_allows_reads():
    guardian = SafetyGuardian()
    assert guardian.validate_request(
        "GET", "https://graph.microsoft.com/v1.0/directoryObjects/u1/memberOf"
    )
    assert guardian.get_audit_record()["safety_guardian"]["status"] == "CLEAN"


@pytest.mark.parametrize("method,url", [
    ("POST", "https://graph.microsoft.com/v1.0/groups"),
    ("DELETE", "https://graph.microsoft.com/v1.0/groups/g1"),
    ("GET", "https://graph.microsoft.com/v1.0/groups/g1/members/$ref"),
])
def test_guardian_blocks_writes(method, url):
    guardian = SafetyGuardian()
    with pytest.raises(SafetyViolation):
        guardian.validate_request(method, url)

    record = guardian.get_audit_record()["safety_guardian"]
    assert record["violations_detected"] == 1
    assert record["status"] == "VIOLATIONS_DETECTED"


def test_config_from_file(tmp_path):
    path = tmp_path / "resolver.json"
    path.write_text(json.dumps({
        "backend": "graph",
        "auth": {
            "mode": "certificate",
            "certificate": {"tenant_id": "t", "client_id": "c", "certificate_path": "cert.txt"},
        },
        "ldap": {"server": "dc01", "use_ssl": False},
        "traversal": {"mode": "best_effort", "strategy": "breadth", "timeout": 10, "unknown": 1},
    }))

    config = ResolverConfig.from_file(str(path))
    options = config.traversal.to_options()

    assert config.backend == "graph"
    assert config.auth.certificate.certificate_path == "cert.txt"
    assert config.ldap.effective_port == 389
    assert options.mode is FailureMode.BEST_EFFORT
    assert options.strategy is Strategy.BREADTH
    assert options.timeout == 10


def test_config_rejects_unknown_backend():
    with pytest.raises(ValueError):
        ResolverConfig(backend="novell")


def test_certificate_password_from_environment(monkeypatch):
    monkeypatch.setenv(CERT_PASSWORD_ENV, "from-env")
    assert ResolverConfig().certificate_password() == "from-env"


def test_default_traversal_is_sequential():
    options = ResolverConfig().traversal.to_options()

    assert options.mode is FailureMode.STRICT
    assert options.strategy is Strategy.DEPTH
