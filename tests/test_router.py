import re
import threading

import pytest

from sdp.errors import InvalidRoute, OverlappingRoute, UnroutableTarget
from sdp.models import RoutingRule
from sdp.router import NoRoute, RouterHolder, RuleTable, build_rules, render_nginx_conf
from sdp.topology import resolve


@pytest.fixture
def topo(app_descriptors):
    return resolve(app_descriptors)


def test_longest_prefix_wins(topo, app_routes):
    table = build_rules(topo, app_routes)
    assert table.route("/api/health").rule.path_prefix == "/api/"
    assert table.route("/x").rule.path_prefix == "/"
    assert table.route("/").rule.target_service == "frontend"


def test_catch_all_registered_first_still_loses_to_specific_prefix(topo):
    table = build_rules(topo, [RoutingRule("/", "frontend", 80), RoutingRule("/api/", "backend", 4000)])
    assert table.route("/api/tutorials").rule.target_service == "backend"


def test_prefix_is_forwarded_unchanged_by_default(topo, app_routes):
    match = build_rules(topo, app_routes).route("/api/health")
    assert match.forward_path == "/api/health"
    assert match.upstream == "http://backend:4000"


def test_strip_prefix_removes_matched_prefix(topo):
    table = build_rules(topo, [RoutingRule("/api/", "backend", 4000, strip_prefix=True)])
    assert table.route("/api/health").forward_path == "/health"
    assert table.route("/api/").forward_path == "/"
    assert table.route("/api/tutorials?title=x").forward_path == "/tutorials?title=x"


def test_query_string_is_kept_without_strip(topo, app_routes):
    match = build_rules(topo, app_routes).route("/api/tutorials?published=true")
    assert match.forward_path == "/api/tutorials?published=true"


def test_unmatched_path_raises_no_route(topo):
    table = build_rules(topo, [RoutingRule("/api/", "backend", 4000)])
    with pytest.raises(NoRoute):
        table.route("/static/app.js")


def test_equal_length_matches_resolve_to_first_registered(topo):
    table = build_rules(
        topo,
        [
            RoutingRule("/api/", "backend", 4000),
            RoutingRule("/api/", "frontend", 80),
            RoutingRule("/", "frontend", 80),
        ],
        allow_overlap=True,
    )
    for _ in range(3):
        assert table.route("/api/health").rule.target_service == "backend"


def test_overlap_mode_prefers_longer_prefix_regardless_of_order(topo):
    table = build_rules(
        topo,
        [RoutingRule("/api", "frontend", 80), RoutingRule("/api/v2/", "backend", 4000)],
        allow_overlap=True,
    )
    assert table.route("/api/v2/items").rule.target_service == "backend"
    assert table.route("/api/v1/items").rule.target_service == "frontend"


def test_overlapping_prefixes_are_rejected(topo):
    with pytest.raises(OverlappingRoute):
        build_rules(topo, [RoutingRule("/api/", "backend", 4000), RoutingRule("/api/v2/", "backend", 4000)])


def test_duplicate_catch_all_is_rejected(topo):
    with pytest.raises(OverlappingRoute):
        build_rules(topo, [RoutingRule("/", "backend", 4000), RoutingRule("/", "frontend", 80)])


def test_unknown_target_is_unroutable(topo):
    with pytest.raises(UnroutableTarget):
        build_rules(topo, [RoutingRule("/admin/", "admin", 8080)])


@pytest.mark.parametrize("rule", [RoutingRule("api/", "backend", 4000), RoutingRule("/api/", "backend", 0)])
def test_malformed_rules_are_rejected(topo, rule):
    with pytest.raises(InvalidRoute):
        build_rules(topo, [rule])


def test_holder_swap_publishes_a_whole_table(topo, app_routes):
    old = build_rules(topo, app_routes)
    new = build_rules(topo, [RoutingRule("/", "backend", 4000)])
    holder = RouterHolder(old)

    seen = []

    def reader():
        for _ in range(2000):
            t = holder.current()
            # A table is either entirely old or entirely new.
            seen.append(tuple(r.path_prefix for r in t.rules))

    threads = [threading.Thread(target=reader) for _ in range(4)]
    for t in threads:
        t.start()
    previous = holder.swap(new)
    for t in threads:
        t.join()

    assert previous is old
    assert holder.current() is new
    assert set(seen) <= {("/api/", "/"), ("/",)}


def test_empty_holder_routes_nothing():
    with pytest.raises(NoRoute):
        RouterHolder().current().route("/")


def test_nginx_conf_keeps_prefix_unless_stripped(topo):
    table = build_rules(
        topo,
        [RoutingRule("/api/", "backend", 4000), RoutingRule("/static/", "frontend", 80, strip_prefix=True)],
    )
    conf = render_nginx_conf(table)
    assert "location /api/ {" in conf
    assert "proxy_pass http://backend:4000;" in conf
    assert "rewrite ^/static/?(.*)$ /$1 break;" in conf
    assert "proxy_pass http://frontend:80;" in conf
    # no catch-all rule: everything else is a 404
    assert "return 404" in conf


def test_nginx_conf_with_catch_all_has_no_default_404(topo, app_routes):
    conf = render_nginx_conf(build_rules(topo, app_routes))
    assert "location / {" in conf
    assert "return 404" not in conf
    assert "return 502" in conf
    assert "error_page 502 504 = @bad_gateway;" in conf
    # upstream 503s reach the client unchanged
    assert "proxy_intercept_errors" not in conf
    assert "503" not in conf


def test_rule_table_is_immutable():
    table = RuleTable([RoutingRule("/", "frontend", 80)])
    with pytest.raises(AttributeError):
        table.rules.append(RoutingRule("/x", "frontend", 80))


def test_stripped_prefix_without_slash_renders_like_route(topo):
    table = build_rules(topo, [RoutingRule("/api", "backend", 4000, strip_prefix=True)])
    conf = render_nginx_conf(table)
    assert "proxy_pass http://backend:4000;" in conf
    rewrite = next(line.strip() for line in conf.splitlines() if line.strip().startswith("rewrite "))
    _, pattern, replacement, _ = rewrite.rstrip(";").split(" ")

    for path in ("/api/x", "/api", "/api/", "/api/v1/items"):
        rewritten = re.sub(pattern, replacement.replace("$1", r"\1"), path)
        assert rewritten == table.route(path).forward_path
    assert table.route("/api/x").forward_path == "/x"
