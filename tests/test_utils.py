"""
Tests for utils.py and the base_auth value types.
"""

import pytest

from pdpj_auth.auth.base_auth import AcquisitionResult, Credentials, LoginFieldRequirement
from pdpj_auth.utils import (
    describe_token,
    mask_username,
    matches_redirect,
    only_digits,
    query_params,
    sibling_url,
)


class TestMasking:

    def test_cpf_keeps_last_three(self):
        assert mask_username("12345678900") == "********900"

    def test_short_values_fully_masked(self):
        assert mask_username("abc") == "***"
        assert mask_username("") == ""

    def test_describe_token_hides_value(self):
        assert describe_token("abc.def.ghi") == "<jwt token, 11 chars>"
        assert describe_token("opaque") == "<opaque token, 6 chars>"
        assert describe_token(None) == "<none>"


class TestUrls:

    def test_query_and_fragment_merged(self):
        url = "https://portal.example/#code=frag&x=1"
        assert query_params(url) == {"code": "frag", "x": "1"}
        assert query_params("https://portal.example/?code=q#code=f")["code"] == "q"
        assert query_params("") == {}

    def test_matches_redirect(self):
        redirect = "https://portaldeservicos.pdpj.jus.br"
        assert matches_redirect("https://portaldeservicos.pdpj.jus.br/?code=x", redirect)
        assert matches_redirect("https://PORTALDESERVICOS.pdpj.jus.br/consulta", redirect)
        assert not matches_redirect("https://sso.cloud.pje.jus.br/?code=x", redirect)

    def test_redirect_path_needs_segment_boundary(self):
        redirect = "https://portal.example/cb"
        assert matches_redirect("https://portal.example/cb?code=x", redirect)
        assert matches_redirect("https://portal.example/cb/?code=x", redirect)
        assert matches_redirect("https://portal.example/cb/done#code=x", redirect)
        assert not matches_redirect("https://portal.example/cbx?code=x", redirect)
        assert not matches_redirect("https://portal.example/?code=x", redirect)

    def test_sibling_url(self):
        assert sibling_url(
            "https://pje.cloud.tjpe.jus.br/1g/login.seam", "dashboard"
        ) == "https://pje.cloud.tjpe.jus.br/1g/dashboard"

    def test_only_digits(self):
        assert only_digits("0001234-56.2024.8.17.0001") == "00012345620248170001"
        assert only_digits(None) == ""


class TestCredentials:

    def test_password_not_in_repr(self):
        assert "secret" not in repr(Credentials("12345678900", "secret"))

    def test_resolve_from_environment(self, monkeypatch):
        monkeypatch.delenv("PJE_USER", raising=False)
        monkeypatch.delenv("PJE_PASS", raising=False)
        monkeypatch.setenv("PDPJ_USERNAME", "98765432100")
        monkeypatch.setenv("PDPJ_PASSWORD", "from-env")

        creds = Credentials().resolve()
        assert creds.is_complete
        assert creds.username == "98765432100"
        assert creds.masked_username == "********100"

    def test_explicit_values_kept(self, monkeypatch):
        monkeypatch.setenv("PJE_USER", "other")
        monkeypatch.setenv("PJE_PASS", "other")
        creds = Credentials("12345678900", "secret").resolve()
        assert creds.username == "12345678900"


class TestAcquisitionResult:

    def test_success_requires_token(self):
        with pytest.raises(ValueError):
            AcquisitionResult(success=True, token="")

    def test_external_shape(self):
        result = AcquisitionResult.failed("nope", attempts=[{"strategy": "x"}])
        assert result.to_dict() == {
            "success": False, "token": None, "tokenType": "Bearer", "message": "nope",
        }
        assert result.to_dict(include_diagnostics=True)["diagnostics"] == {
            "attempts": [{"strategy": "x"}]
        }

    def test_field_selector(self):
        field = LoginFieldRequirement(name="email")
        assert field.selector == 'input[name="email"], input[id="email"]'
