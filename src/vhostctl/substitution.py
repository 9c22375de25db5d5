"""Placeholder substitution for archetype templates.

Template bodies use ``{{NAME}}`` placeholders. Rendering happens in at most
two passes over the text:

1. Every placeholder in the template body is replaced by its value from the
   variable mapping. Placeholders without a value become empty strings, so
   archetype specific keys (``PORT`` on a static site) may simply be absent.
2. Some values are *derived*: the ``www`` server name fragments and the
   redirect server block are composed as literal text that still contains
   ``{{DOMAIN}}`` style placeholders. A second pass resolves those. At this
   stage an unknown key is a defect in the derived value and raises
   :class:`~vhostctl.errors.RenderIncompleteError`.

If placeholders still remain after the second pass a third pass would be
required, which is refused so a self-referencing value can never expand
forever.

The passes run on a Jinja2 environment whose block and comment delimiters are
moved out of the way, leaving ``{{ }}`` as the only syntax recognised in a
template body.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Mapping

from jinja2 import Environment, StrictUndefined, TemplateSyntaxError, Undefined, UndefinedError

from .errors import RenderIncompleteError
from .models import Site, WwwPolicy
from .tls import CertificateMaterial, TLSDirectives

LOGGER = logging.getLogger(__name__)

MAX_PASSES = 2
PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)?.*?\}\}", re.DOTALL)

# Fixed literal for the secondary server block. ``{{SSL_LISTEN}}`` and the
# host names are resolved by the second pass.
WWW_REDIRECT_TEMPLATE = """
server {{
    listen 80;
    listen [::]:80;{{{{SSL_LISTEN}}}}

    server_name {source};

    return 301 $scheme://{target}$request_uri;
}}
"""


def _environment(undefined: type[Undefined]) -> Environment:
    return Environment(
        block_start_string="<%vhostctl",
        block_end_string="%>",
        comment_start_string="<#vhostctl",
        comment_end_string="#>",
        undefined=undefined,
        autoescape=False,
        keep_trailing_newline=True,
    )


def find_placeholders(text: str) -> tuple[str, ...]:
    """Return every placeholder token remaining in *text*."""
    return tuple(match.group(0) for match in PLACEHOLDER_RE.finditer(text))


def derive_variables(
    site: Site,
    *,
    directives: TLSDirectives | None = None,
    material: CertificateMaterial | None = None,
) -> dict[str, str]:
    """Return the full variable mapping for *site*, derived values included.

    ``SSL_LISTEN`` is only populated when both *directives* and *material* are
    supplied, which happens when a site is re-rendered after its certificate
    was issued.
    """
    variables = site.variables()
    policy = site.www_policy

    variables["SERVER_NAME"] = "www.{{DOMAIN}}" if policy is WwwPolicy.WWW else "{{DOMAIN}}"
    variables["WWW_CONFIG"] = " www.{{DOMAIN}}" if policy is WwwPolicy.BOTH else ""

    if policy is WwwPolicy.APEX:
        variables["WWW_REDIRECT_BLOCK"] = WWW_REDIRECT_TEMPLATE.format(
            source="www.{{DOMAIN}}", target="{{DOMAIN}}"
        )
    elif policy is WwwPolicy.WWW:
        variables["WWW_REDIRECT_BLOCK"] = WWW_REDIRECT_TEMPLATE.format(
            source="{{DOMAIN}}", target="www.{{DOMAIN}}"
        )
    else:
        variables["WWW_REDIRECT_BLOCK"] = ""

    ssl_listen = ""
    if site.tls and directives is not None and material is not None and policy.redirects:
        # Concrete paths: a placeholder here would need a third pass.
        lines = directives.secondary_block(material)
        ssl_listen = "".join(f"\n    {line}" for line in lines)
    variables["SSL_LISTEN"] = ssl_listen
    return variables


class SubstitutionEngine:
    """Expand ``{{NAME}}`` placeholders with a bounded second pass."""

    def __init__(self, *, max_passes: int = MAX_PASSES) -> None:
        if max_passes < 1:
            raise ValueError("max_passes must be at least 1.")
        self.max_passes = max_passes
        self._lenient = _environment(Undefined)
        self._strict = _environment(StrictUndefined)

    def render(self, template_body: str, variables: Mapping[str, str]) -> str:
        """Render *template_body* with *variables*.

        Raises :class:`RenderIncompleteError` when derived values reference an
        unknown key or when placeholders survive the final pass.
        """
        values = dict(variables)
        text = self._expand(self._lenient, template_body, values, first=True)
        passes = 1
        while find_placeholders(text):
            if passes >= self.max_passes:
                leftover = find_placeholders(text)
                raise RenderIncompleteError(
                    f"Placeholders remain after {passes} substitution passes: "
                    f"{', '.join(sorted(set(leftover)))}.",
                    unresolved=leftover,
                )
            text = self._expand(self._strict, text, values, first=False)
            passes += 1
        LOGGER.debug("Rendered template in %d pass(es)", passes)
        return text.rstrip() + "\n"

    @staticmethod
    def _expand(
        environment: Environment,
        text: str,
        values: Mapping[str, str],
        *,
        first: bool,
    ) -> str:
        try:
            return environment.from_string(text).render(values)
        except UndefinedError as exc:
            unresolved = find_placeholders(text)
            raise RenderIncompleteError(
                f"Derived value references an unknown placeholder: {exc.message}",
                unresolved=unresolved,
            ) from exc
        except TemplateSyntaxError as exc:
            stage = "template" if first else "derived value"
            raise RenderIncompleteError(
                f"Malformed placeholder in {stage} (line {exc.lineno}): {exc.message}"
            ) from exc


__all__ = [
    "MAX_PASSES",
    "SubstitutionEngine",
    "derive_variables",
    "find_placeholders",
]
