"""
Divi Builder Metrics
Turns raw browser telemetry (network responses, coverage ranges, trace events,
performance entries) into the numbers of the performance report.
"""

import json
from dataclasses import dataclass, field
from urllib.parse import urlparse

# Asset classification by URL suffix
JS_SUFFIXES = ('.js',)
CSS_SUFFIXES = ('.css',)
IMAGE_SUFFIXES = ('.jpg', '.jpeg', '.png', '.gif')

# Long tasks
TRACE_CATEGORY = 'devtools.timeline'
TRACE_EVENT_NAME = 'FunctionCall'
LONG_TASK_THRESHOLD = 50  # microseconds, as emitted by the tracing subsystem
TOP_LONG_TASKS = 5

# Blurb module render marks
RENDER_MARKER = 'blurb-module-rendered'


class MetricsWarning(Exception):
    """Non-fatal problem found while aggregating telemetry"""

    # Compared by value so repeated reports over one snapshot are equal
    def __eq__(self, other):
        return type(self) is type(other) and self.args == other.args

    def __hash__(self):
        return hash((type(self), self.args))


class MissingDataError(MetricsWarning):
    """A telemetry record lacks a field the report needs"""


class InvalidCoverageEntry(MetricsWarning):
    """A coverage entry has no text to measure against"""


class EmptyModuleMetrics(MetricsWarning):
    """No render marks were recorded for the tracked module"""


class CollaboratorFailure(MetricsWarning):
    """The browser side could not capture part of the telemetry"""


@dataclass(frozen=True)
class ResponseRecord:
    url: str
    encoded_data_length: int = 0
    content_length: int | None = None

    @property
    def asset_class(self):
        return classify_url(self.url)


@dataclass(frozen=True)
class CoverageRange:
    start: int
    end: int


@dataclass(frozen=True)
class CoverageEntry:
    url: str
    total_bytes: int
    ranges: tuple = ()


@dataclass(frozen=True)
class TraceEvent:
    category: str
    name: str
    duration: float = 0
    function_name: str | None = None


@dataclass(frozen=True)
class PerformanceMark:
    name: str
    start_time: float


@dataclass(frozen=True)
class LongTask:
    name: str | None
    duration: float


@dataclass
class TelemetrySnapshot:
    """Everything one page load captured. Any field may be missing."""
    responses: list = field(default_factory=list)
    js_coverage: list | None = None
    css_coverage: list | None = None
    trace_events: list | None = None
    heap_used_bytes: int | None = None
    load_time_ms: float | None = None
    script_count: int | None = None
    stylesheet_count: int | None = None
    marks_initial: list | None = None
    marks_after_hover: list | None = None
    failures: list = field(default_factory=list)


@dataclass
class AssetTotals:
    total_load_size: int = 0
    js_size: int = 0
    css_size: int = 0
    image_size: int = 0


@dataclass
class CoverageUsage:
    url: str
    used_bytes: int
    total_bytes: int
    percent_used: float | None


@dataclass
class CoverageSummary:
    kind: str
    percent_used: float | None
    unused_bytes: int
    entries: list = field(default_factory=list)

    @property
    def available(self):
        return self.percent_used is not None


@dataclass
class ModuleRenderMetrics:
    first_render_ms: float | None
    initial_count: int | None
    after_hover_count: int | None

    @property
    def rendered(self):
        return self.first_render_ms is not None

    @property
    def first_render_seconds(self):
        if self.first_render_ms is None:
            return None
        return self.first_render_ms / 1000


@dataclass
class AggregateReport:
    load_time_ms: float | None
    assets: AssetTotals
    script_count: int | None
    stylesheet_count: int | None
    js_coverage: CoverageSummary
    css_coverage: CoverageSummary
    long_tasks: list
    heap_used_bytes: int | None
    module: ModuleRenderMetrics
    warnings: list = field(default_factory=list)


def classify_url(url):
    """Return 'js', 'css', 'image' or 'other' based on the URL path suffix"""
    path = urlparse(url).path
    if path.endswith(JS_SUFFIXES):
        return 'js'
    if path.endswith(CSS_SUFFIXES):
        return 'css'
    if path.endswith(IMAGE_SUFFIXES):
        return 'image'
    return 'other'


def _to_int(value):
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None


def aggregate_asset_sizes(responses, warnings=None):
    """Sum transferred bytes overall and per asset class.

    The overall total uses the encoded (on-wire) length of every response.
    Class totals use the content-length header; a missing header counts as
    zero and is reported through ``warnings``.
    """
    totals = AssetTotals()
    for record in responses:
        totals.total_load_size += max(record.encoded_data_length or 0, 0)

        asset_class = record.asset_class
        if asset_class == 'other':
            continue

        length = record.content_length
        if length is None:
            if warnings is not None:
                warnings.append(MissingDataError(f"No content-length for {record.url}"))
            length = 0
        length = max(length, 0)

        if asset_class == 'js':
            totals.js_size += length
        elif asset_class == 'css':
            totals.css_size += length
        else:
            totals.image_size += length
    return totals


def used_bytes(ranges):
    """Bytes covered by ``ranges``, counting each range as end - start - 1"""
    return sum(max(r.end - r.start - 1, 0) for r in ranges)


def coverage_usage(entry):
    # CDP offsets count UTF-16 units, len() counts code points
    used = min(used_bytes(entry.ranges), max(entry.total_bytes, 0))
    if entry.total_bytes <= 0:
        percent = None
    else:
        percent = used / entry.total_bytes * 100
    return CoverageUsage(entry.url, used, entry.total_bytes, percent)


def summarize_coverage(kind, entries, warnings=None):
    """Unweighted mean of per-resource usage plus total unused bytes.

    Zero-length resources are left out of the mean. When nothing usable
    remains the percentage is ``None``.
    """
    usages = []
    unused = 0
    for entry in entries or []:
        usage = coverage_usage(entry)
        usages.append(usage)
        if usage.percent_used is None:
            if warnings is not None:
                warnings.append(InvalidCoverageEntry(f"{kind.upper()} resource {entry.url or '<inline>'} has no text"))
            continue
        unused += max(usage.total_bytes - usage.used_bytes, 0)

    percents = [u.percent_used for u in usages if u.percent_used is not None]
    if percents:
        percent = sum(percents) / len(percents)
    else:
        percent = None
        if warnings is not None:
            warnings.append(MissingDataError(f"No {kind.upper()} coverage data"))
    return CoverageSummary(kind, percent, unused, usages)


def top_long_tasks(events, limit=TOP_LONG_TASKS, threshold=LONG_TASK_THRESHOLD):
    """Longest FunctionCall events above ``threshold``, longest first"""
    tasks = [
        LongTask(event.function_name, event.duration)
        for event in events or []
        if event.category == TRACE_CATEGORY and event.name == TRACE_EVENT_NAME
    ]
    tasks = [task for task in tasks if task.duration > threshold]
    # sorted() is stable with reverse=True, equal durations keep trace order
    tasks = sorted(tasks, key=lambda task: task.duration, reverse=True)
    return tasks[:limit]


def render_marks(marks, marker=RENDER_MARKER):
    """Marks whose name contains ``marker``, ordered by start time"""
    found = [mark for mark in marks if marker in mark.name]
    return sorted(found, key=lambda mark: mark.start_time)


def module_render_metrics(initial, after_hover, warnings=None):
    """First render time and render counts around one hover.

    ``after_hover`` is a second read of the whole performance timeline, so its
    count includes the renders already seen in ``initial``.
    """
    initial_marks = render_marks(initial) if initial is not None else None
    after_marks = render_marks(after_hover) if after_hover is not None else None

    first_render = None
    if initial_marks:
        first_render = initial_marks[0].start_time
    elif initial_marks is not None and warnings is not None:
        warnings.append(EmptyModuleMetrics('Blurb module was not rendered'))

    return ModuleRenderMetrics(
        first_render_ms=first_render,
        initial_count=len(initial_marks) if initial_marks is not None else None,
        after_hover_count=len(after_marks) if after_marks is not None else None,
    )


def compute_report(snapshot):
    """Build the AggregateReport for one telemetry snapshot"""
    warnings = list(snapshot.failures)

    assets = aggregate_asset_sizes(snapshot.responses, warnings)
    js_coverage = summarize_coverage('js', snapshot.js_coverage, warnings)
    css_coverage = summarize_coverage('css', snapshot.css_coverage, warnings)
    long_tasks = top_long_tasks(snapshot.trace_events)
    module = module_render_metrics(snapshot.marks_initial, snapshot.marks_after_hover, warnings)

    return AggregateReport(
        load_time_ms=snapshot.load_time_ms,
        assets=assets,
        script_count=snapshot.script_count,
        stylesheet_count=snapshot.stylesheet_count,
        js_coverage=js_coverage,
        css_coverage=css_coverage,
        long_tasks=long_tasks,
        heap_used_bytes=snapshot.heap_used_bytes,
        module=module,
        warnings=warnings,
    )


# ---------------------------------------------------------------------------
# Decoding raw CDP / page payloads
# ---------------------------------------------------------------------------

def response_record_from_cdp(params):
    """Build a ResponseRecord from a Network.responseReceived event"""
    response = params.get('response', {})
    headers = {str(k).lower(): v for k, v in (response.get('headers') or {}).items()}
    return ResponseRecord(
        url=response.get('url', ''),
        encoded_data_length=_to_int(response.get('encodedDataLength')) or 0,
        content_length=_to_int(headers.get('content-length')),
    )


def disjoint_ranges(ranges):
    """Flatten nested counted ranges into sorted non-overlapping used ranges.

    ``ranges`` are dicts with ``startOffset``, ``endOffset`` and ``count`` as
    returned by Profiler.takePreciseCoverage. Inner ranges override their
    enclosing range; adjacent used ranges are merged.
    """
    points = []
    for r in ranges:
        length = r['endOffset'] - r['startOffset']
        if length <= 0:
            continue
        # At equal offsets: ends before starts, outer starts before inner,
        # inner ends before outer.
        points.append((r['startOffset'], 1, -length, r.get('count', 0)))
        points.append((r['endOffset'], 0, length, None))
    points.sort(key=lambda p: (p[0], p[1], p[2]))

    counts = []
    result = []
    last_offset = 0
    for offset, is_start, _, count in points:
        if counts and last_offset < offset and counts[-1] > 0:
            if result and result[-1][1] == last_offset:
                result[-1][1] = offset
            else:
                result.append([last_offset, offset])
        last_offset = offset
        if is_start:
            counts.append(count)
        else:
            counts.pop()

    return tuple(CoverageRange(start, end) for start, end in result if end > start)


def coverage_entry_from_script(url, functions, source):
    """CoverageEntry for one script from its Profiler function coverage"""
    ranges = [r for fn in functions for r in fn.get('ranges', [])]
    return CoverageEntry(url, len(source or ''), disjoint_ranges(ranges))


def coverage_entry_from_stylesheet(url, rule_usage, text):
    """CoverageEntry for one stylesheet from CSS.stopRuleUsageTracking output"""
    ranges = [
        {
            'startOffset': rule['startOffset'],
            'endOffset': rule['endOffset'],
            'count': 1 if rule.get('used') else 0,
        }
        for rule in rule_usage
    ]
    return CoverageEntry(url, len(text or ''), disjoint_ranges(ranges))


def parse_trace(buffer):
    """Decode a Chromium trace dump into TraceEvents"""
    if isinstance(buffer, bytes):
        buffer = buffer.decode('utf-8')
    data = json.loads(buffer) if buffer else []
    raw_events = data.get('traceEvents', []) if isinstance(data, dict) else data

    events = []
    for raw in raw_events:
        args_data = (raw.get('args') or {}).get('data') or {}
        events.append(TraceEvent(
            category=raw.get('cat', ''),
            name=raw.get('name', ''),
            duration=raw.get('dur', 0) or 0,
            function_name=args_data.get('functionName'),
        ))
    return events


def parse_performance_entries(raw):
    """Decode performance.getEntries() output (JSON text or list)"""
    if isinstance(raw, (str, bytes)):
        raw = json.loads(raw)
    return [
        PerformanceMark(entry.get('name', ''), entry.get('startTime', 0) or 0)
        for entry in raw or []
    ]


def heap_used_from_metrics(result):
    """JSHeapUsedSize from a Performance.getMetrics result, or None"""
    for metric in result.get('metrics', []):
        if metric.get('name') == 'JSHeapUsedSize':
            return _to_int(metric.get('value'))
    return None
