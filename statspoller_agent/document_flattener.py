# Copyright 2014 Scalyr Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#   http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# ------------------------------------------------------------------------
"""Turns nested status documents into flat numeric metrics.

A raw document (decoded JSON or BSON) is first converted into a tree of `DocumentNode`s, each tagged with one of
the node kinds below.  The filter pass then removes everything that is not a metric: excluded subtrees, status
keys such as `ok`, and every non numeric leaf.  The flatten pass walks what is left and emits one
`(dotted.path, Decimal)` pair per numeric leaf.

Example:

    {"a": {"b": 1, "commands": {"x": 2}}, "ok": 1.0}  ->  [("a.b", Decimal(1))]
"""

from collections.abc import Mapping

from statspoller_agent import agent_logging
from statspoller_agent.metric import Metric, graphite_sanitize, to_decimal

log = agent_logging.getLogger(__name__)

NUMBER = "number"
STRING = "string"
MAP = "map"
LIST = "list"
OTHER = "other"


class DocumentNode(object):
    """One node of a document.

    For MAP nodes `value` is a list of `(key, DocumentNode)` pairs in document order, for LIST nodes a list of
    `DocumentNode`s, for NUMBER nodes a `Decimal`.  STRING and OTHER nodes keep the raw value.
    """

    __slots__ = ("kind", "value")

    def __init__(self, kind, value):
        self.kind = kind
        self.value = value

    def is_empty(self):
        return self.kind in (MAP, LIST) and not self.value

    def __eq__(self, other):
        if not isinstance(other, DocumentNode):
            return NotImplemented
        return self.kind == other.kind and self.value == other.value

    def __repr__(self):
        return "DocumentNode(%s, %r)" % (self.kind, self.value)


def to_document(raw):
    """Converts a decoded JSON/BSON structure to a `DocumentNode` tree.

    @rtype: DocumentNode
    """
    if isinstance(raw, DocumentNode):
        return raw
    if isinstance(raw, Mapping):
        return DocumentNode(MAP, [(str(key), to_document(value)) for key, value in raw.items()])
    if isinstance(raw, (list, tuple)):
        return DocumentNode(LIST, [to_document(value) for value in raw])
    if isinstance(raw, str):
        return DocumentNode(STRING, raw)

    number = to_decimal(raw)
    if number is not None:
        return DocumentNode(NUMBER, number)
    # None, dates, binary data, object ids, NaN...
    return DocumentNode(OTHER, raw)


class FilterRules(object):
    """The keys the filter pass removes.  All comparisons are case-insensitive.

    @ivar permanent_exclusions: Keys that are always removed, whatever the verbosity.
    @ivar conditional_exclusions: Subtrees removed unless the caller asked for verbose output or the origin is
        always verbose.
    @ivar always_verbose_origins: Origin prefixes for which the conditional exclusions never apply.
    @ivar status_keys: Numeric keys carrying command status rather than a metric.
    """

    def __init__(
        self,
        permanent_exclusions=("commands",),
        conditional_exclusions=("indexDetails", "wiredTiger"),
        always_verbose_origins=("serverStatus",),
        status_keys=("ok",),
    ):
        self.permanent_exclusions = frozenset(k.lower() for k in permanent_exclusions)
        self.conditional_exclusions = frozenset(k.lower() for k in conditional_exclusions)
        self.always_verbose_origins = tuple(o.lower() for o in always_verbose_origins)
        self.status_keys = frozenset(k.lower() for k in status_keys)

    def is_always_verbose(self, origin):
        return bool(origin) and origin.lower().startswith(self.always_verbose_origins)


DEFAULT_FILTER_RULES = FilterRules()


def filter_document(document, origin, rules=None, verbose=False):
    """Returns a copy of `document` holding only the numeric leaves that are metrics.

    @param document: The document, either raw or already converted with `to_document`.
    @param origin: The name of the section the document came from, e.g. `serverStatus`.
    @param rules: The filter rules.  Defaults to `DEFAULT_FILTER_RULES`.
    @param verbose: If True the conditional exclusions are not applied.

    @return: A MAP node, possibly empty.
    @rtype: DocumentNode
    """
    if rules is None:
        rules = DEFAULT_FILTER_RULES
    document = to_document(document)
    if document.kind != MAP:
        return DocumentNode(MAP, [])

    keep_conditional = verbose or rules.is_always_verbose(origin)
    return _filter_map(document, rules, keep_conditional)


def _filter_map(node, rules, keep_conditional):
    entries = []
    for key, child in node.value:
        lowered_key = key.lower()
        if lowered_key in rules.permanent_exclusions:
            continue

        if child.kind == MAP:
            if not keep_conditional and lowered_key in rules.conditional_exclusions:
                continue
            filtered = _filter_map(child, rules, keep_conditional)
            if not filtered.is_empty():
                entries.append((key, filtered))
        elif child.kind == NUMBER:
            if lowered_key not in rules.status_keys:
                entries.append((key, child))
        # STRING, LIST and OTHER leaves are never metrics.

    return DocumentNode(MAP, entries)


def flatten_document(document, path=""):
    """Yields a `(path, Decimal)` pair for every numeric leaf of a filtered document, depth first.

    @type document: DocumentNode
    @param path: The path accumulated so far.  Empty at the root.
    """
    for key, child in document.value:
        child_path = "%s.%s" % (path, key) if path else key
        if child.kind == MAP:
            for pair in flatten_document(child, child_path):
                yield pair
        elif child.kind == NUMBER:
            yield child_path, child.value


def document_to_metrics(document, origin, timestamp, rules=None, verbose=False):
    """Filters and flattens `document` into Metrics sharing one timestamp.

    Paths are `origin.<flattened path>` passed through the Graphite sanitizer.  When two paths end up identical
    after sanitizing, the first one in document order is kept.

    @param document: The raw or converted document.
    @param origin: Label of the document, used as the first path segments.  May be empty.
    @param timestamp: Capture time in milliseconds since epoch.

    @rtype: list[Metric]
    """
    filtered = filter_document(document, origin, rules=rules, verbose=verbose)

    result = []
    seen_paths = set()
    for path, value in flatten_document(filtered, origin or ""):
        sanitized_path = graphite_sanitize(path)
        if not sanitized_path:
            continue
        if sanitized_path in seen_paths:
            log.log(
                agent_logging.DEBUG_LEVEL_2,
                "Dropping value of %s because it collides with an earlier path after sanitizing",
                path,
            )
            continue
        seen_paths.add(sanitized_path)
        result.append(Metric(sanitized_path, value, timestamp))

    return result


def compute_lag_document(reference_time_ms, peers, window_secs=None):
    """Computes the lag of every peer behind a reference entity.

    For each peer `lag = reference_time - peer_time` and, when the window is known,
    `headroom = window * 1000 - lag`.  Both are reported in whole seconds.

    @param reference_time_ms: The reference timestamp (e.g. the primary's last applied operation), in ms.
    @param peers: Iterable of `(category, name, peer_time_ms)`.
    @param window_secs: The width of the window the peers must stay within (e.g. the oplog window).

    @return: A nested dict document `{"replicationLag-Sec": {category: {name: secs}}, ...}` meant to be passed to
        `document_to_metrics`.
    @rtype: dict
    """
    lag = {}
    headroom = {}
    for category, name, peer_time_ms in peers:
        lag_ms = reference_time_ms - peer_time_ms
        lag.setdefault(category, {})[name] = _truncating_div(lag_ms, 1000)
        if window_secs is not None:
            headroom_ms = window_secs * 1000 - lag_ms
            headroom.setdefault(category, {})[name] = _truncating_div(headroom_ms, 1000)

    result = {}
    if lag:
        result["replicationLag-Sec"] = lag
    if headroom:
        result["replicationHeadroom-Sec"] = headroom
    return result


def _truncating_div(numerator, denominator):
    """Integer division rounding toward zero, so a negative lag of -1500ms is -1s and not -2s."""
    quotient = abs(numerator) // denominator
    if numerator < 0:
        return -quotient
    return quotient
