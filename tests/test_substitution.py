"""Tests for placeholder substitution and www composition."""
from __future__ import annotations

import itertools
from pathlib import Path

import pytest

from vhostctl.config import TLSConfig
from vhostctl.errors import RenderIncompleteError
from vhostctl.models import Site, WwwPolicy
from vhostctl.substitution import SubstitutionEngine, derive_variables, find_placeholders
from vhostctl.templates import TemplateStore
from vhostctl.tls import CertificateMaterial, TLSDirectives

STORE = TemplateStore.with_overrides(None)
ENGINE = SubstitutionEngine()

_ATTRIBUTES: dict[str, dict[str, object]] = {
    "static": {"root_path": "/srv/example"},
    "php": {"root_path": "/srv/app", "runtime_version": "8.3"},
    "proxy": {"port": 3000},
    "redirect": {"redirect_target": "example.org"},
}


def _render(site: Site, **kwargs: object) -> str:
    variables = derive_variables(site, **kwargs)  # type: ignore[arg-type]
    return ENGINE.render(STORE.lookup(site.archetype).text, variables)


@pytest.mark.parametrize(
    ("archetype", "policy"),
    list(itertools.product(_ATTRIBUTES, [policy.value for policy in WwwPolicy])),
)
def test_render_leaves_no_placeholders(archetype: str, policy: str) -> None:
    """Every archetype renders completely under every www policy."""
    site = Site.create(
        "example.com",
        archetype,
        www_policy=policy,
        **_ATTRIBUTES[archetype],  # type: ignore[arg-type]
    )

    output = _render(site)

    assert "{{" not in output
    assert "}}" not in output
    assert output.endswith("}\n")


def test_static_apex_policy_matches_expected_layout() -> None:
    """Apex-primary sites get a www redirect block pointing at the apex."""
    site = Site.create("example.com", "static", root_path="/srv/example", www_policy="apex")

    output = _render(site)

    assert "server_name example.com;" in output
    assert "root /srv/example;" in output
    assert "location / {" in output
    assert "server_name www.example.com;" in output
    assert "return 301 $scheme://example.com$request_uri;" in output
    assert "server_name example.com www.example.com;" not in output


def test_www_policy_redirects_apex_to_www() -> None:
    """Www-primary sites serve www and redirect the apex."""
    site = Site.create("example.com", "static", root_path="/srv/example", www_policy="www")

    output = _render(site)

    head = output.split("server_name www.example.com;", 1)[0]
    assert "server_name" not in head
    assert "server_name example.com;" in output
    assert "return 301 $scheme://www.example.com$request_uri;" in output


def test_none_policy_has_no_www() -> None:
    """Without a www policy neither fragment nor redirect block appears."""
    site = Site.create("example.com", "static", root_path="/srv/example")

    output = _render(site)

    assert "www." not in output
    assert output.count("server {") == 1


def test_both_policy_serves_inline_names() -> None:
    """The both policy answers for apex and www in a single block."""
    site = Site.create("example.com", "static", root_path="/srv/example", www_policy="both")

    output = _render(site)

    assert "server_name example.com www.example.com;" in output
    assert output.count("server {") == 1


def test_proxy_renders_upstream_and_upgrade_headers() -> None:
    """Proxy sites point an upstream at the local port with upgrade headers."""
    site = Site.create("api.example.com", "process-proxy", port="3000")

    output = _render(site)

    assert "server 127.0.0.1:3000;" in output
    assert "proxy_pass http://api.example.com;" in output
    assert "proxy_set_header Upgrade $http_upgrade;" in output
    assert "proxy_set_header Connection 'upgrade';" in output


def test_php_uses_runtime_socket() -> None:
    """The PHP runtime version selects the FPM socket."""
    site = Site.create("example.com", "php", root_path="/srv/app", runtime_version="8.3")

    output = _render(site)

    assert "root /srv/app/public;" in output
    assert "unix:/var/run/php/php8.3-fpm.sock;" in output


def test_ssl_listen_filled_in_redirect_block(tmp_path: Path) -> None:
    """The redirect block listens on 443 once a certificate is known."""
    site = Site.create(
        "example.com", "static", root_path="/srv/example", www_policy="apex", tls=True
    )
    material = CertificateMaterial(tmp_path / "fullchain.pem", tmp_path / "privkey.pem")

    output = _render(site, directives=TLSDirectives(TLSConfig()), material=material)

    redirect = output.split("server_name www.example.com;")[0].rsplit("server {", 1)[1]
    assert "listen 443 ssl;" in redirect
    assert f"ssl_certificate {tmp_path / 'fullchain.pem'};" in redirect
    assert "{{" not in output


def test_missing_first_pass_value_renders_empty() -> None:
    """Placeholders absent from the mapping vanish in the first pass."""
    assert ENGINE.render("listen {{PORT}}80;", {}) == "listen 80;\n"


def test_unknown_derived_placeholder_raises() -> None:
    """A derived value referencing an unknown key is a render defect."""
    with pytest.raises(RenderIncompleteError, match="unknown placeholder"):
        ENGINE.render("server_name {{A}};", {"A": "{{NOPE}}"})


def test_third_pass_is_refused() -> None:
    """Values needing more than two passes leave the render incomplete."""
    with pytest.raises(RenderIncompleteError) as excinfo:
        ENGINE.render("{{A}}", {"A": "{{B}}", "B": "{{C}}", "C": "done"})

    assert excinfo.value.unresolved == ("{{C}}",)


def test_two_passes_resolve_nested_values() -> None:
    """A single level of nesting resolves in the second pass."""
    assert ENGINE.render("{{A}}", {"A": "{{B}}", "B": "done"}) == "done\n"


def test_single_pass_engine() -> None:
    """Engines may be restricted to one pass."""
    with pytest.raises(ValueError):
        SubstitutionEngine(max_passes=0)
    with pytest.raises(RenderIncompleteError):
        SubstitutionEngine(max_passes=1).render("{{A}}", {"A": "{{B}}", "B": "x"})


def test_find_placeholders() -> None:
    """Placeholder detection tolerates inner whitespace."""
    assert find_placeholders("a {{ DOMAIN }} b {{PORT}}") == ("{{ DOMAIN }}", "{{PORT}}")
