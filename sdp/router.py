from __future__ import annotations

import re
from dataclasses import dataclass
from threading import Lock
from typing import Iterable

from .errors import InvalidRoute, OverlappingRoute, UnroutableTarget
from .models import RoutingRule, Topology

CATCH_ALL = "/"


class NoRoute(Exception):
    pass


@dataclass(frozen=True)
class RouteMatch:
    rule: RoutingRule
    forward_path: str

    @property
    def upstream(self) -> str:
        """Base URL of the target inside the shared network."""
        return f"http://{self.rule.target_service}:{int(self.rule.target_port)}"


class RuleTable:
    """Immutable prefix routing table.

    Rules are kept sorted by (longest prefix first, registration order), so the
    first prefix that matches is the longest one and equal lengths resolve to
    whichever was registered first.
    """

    def __init__(self, rules: Iterable[RoutingRule] = ()):
        self._rules: tuple[RoutingRule, ...] = tuple(rules)
        ranked = sorted(enumerate(self._rules), key=lambda it: (-len(it[1].path_prefix), it[0]))
        self._ordered: tuple[RoutingRule, ...] = tuple(r for _, r in ranked)

    @property
    def rules(self) -> tuple[RoutingRule, ...]:
        return self._rules

    def __len__(self) -> int:
        return len(self._rules)

    def route(self, request_path: str) -> RouteMatch:
        path, sep, query = request_path.partition("?")
        if not path.startswith("/"):
            path = "/" + path
        for rule in self._ordered:
            if path.startswith(rule.path_prefix):
                forward = path
                if rule.strip_prefix and rule.path_prefix != CATCH_ALL:
                    forward = path[len(rule.path_prefix):]
                    if not forward.startswith("/"):
                        forward = "/" + forward
                return RouteMatch(rule=rule, forward_path=forward + (sep + query if sep else ""))
        raise NoRoute(request_path)


def _overlaps(a: str, b: str) -> bool:
    return a.startswith(b) or b.startswith(a)


def build_rules(topology: Topology, rule_specs: Iterable[RoutingRule], allow_overlap: bool = False) -> RuleTable:
    """Validate routing rules against a resolved topology and freeze them."""
    accepted: list[RoutingRule] = []
    for spec in rule_specs:
        prefix = spec.path_prefix
        if not prefix.startswith("/") or "?" in prefix or "#" in prefix:
            raise InvalidRoute(f"Route prefix {prefix!r} must be an absolute path.")
        if not 1 <= int(spec.target_port) <= 65535:
            raise InvalidRoute(f"Route '{prefix}' has invalid port {spec.target_port}.")
        if spec.target_service not in topology:
            raise UnroutableTarget(prefix, spec.target_service)
        if not allow_overlap and prefix != CATCH_ALL:
            for other in accepted:
                if other.path_prefix != CATCH_ALL and _overlaps(prefix, other.path_prefix):
                    raise OverlappingRoute(other.path_prefix, prefix)
        if not allow_overlap and prefix == CATCH_ALL and any(r.path_prefix == CATCH_ALL for r in accepted):
            raise OverlappingRoute(CATCH_ALL, CATCH_ALL)
        accepted.append(spec)
    return RuleTable(accepted)


class RouterHolder:
    """Single swappable reference to the active rule table."""

    def __init__(self, table: RuleTable | None = None) -> None:
        self._lock = Lock()
        self._table = table or RuleTable()

    def current(self) -> RuleTable:
        with self._lock:
            return self._table

    def swap(self, table: RuleTable) -> RuleTable:
        """Publish a new table; returns the previous one."""
        with self._lock:
            previous, self._table = self._table, table
            return previous


BAD_GATEWAY_BODY = '{"detail": "Bad Gateway"}'
NOT_FOUND_BODY = '{"detail": "Not Found"}'


def render_nginx_conf(table: RuleTable, listen_port: int = 80) -> str:
    """Render the router configuration shipped to the target host.

    nginx picks the longest matching prefix location too, so the rendered file
    behaves like ``RuleTable.route``. Stripped prefixes are rewritten to the
    same re-rooted path ``route`` forwards. Only errors nginx raises itself
    (upstream unreachable or timed out) become the generic 502; upstream
    responses pass through with their own status.
    """
    lines = [
        "# Generated by sdp. Changes are overwritten on the next deploy.",
        "server {",
        f"    listen {int(listen_port)};",
        "    server_name _;",
        "",
        "    error_page 502 504 = @bad_gateway;",
        "",
    ]
    seen: set[str] = set()
    for rule in table.rules:
        # nginx rejects duplicate locations; the first registration wins either way.
        if rule.path_prefix in seen:
            continue
        seen.add(rule.path_prefix)
        upstream = f"http://{rule.target_service}:{int(rule.target_port)}"
        lines.append(f"    location {rule.path_prefix} {{")
        if rule.strip_prefix and rule.path_prefix != CATCH_ALL:
            lines.append(f"        rewrite ^{re.escape(rule.path_prefix.rstrip('/'))}/?(.*)$ /$1 break;")
        lines += [
            f"        proxy_pass {upstream};",
            "        proxy_http_version 1.1;",
            "        proxy_set_header Host $host;",
            "        proxy_set_header X-Real-IP $remote_addr;",
            "        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;",
            "        proxy_set_header X-Forwarded-Proto $scheme;",
            "    }",
            "",
        ]
    if CATCH_ALL not in seen:
        lines += [
            "    location / {",
            "        default_type application/json;",
            f"        return 404 '{NOT_FOUND_BODY}';",
            "    }",
            "",
        ]
    lines += [
        "    location @bad_gateway {",
        "        default_type application/json;",
        f"        return 502 '{BAD_GATEWAY_BODY}';",
        "    }",
        "}",
        "",
    ]
    return "\n".join(lines)
