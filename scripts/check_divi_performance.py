#!/usr/bin/env python3
"""
Divi Visual Builder Performance Script
Logs into WordPress, loads a Divi Visual Builder page using Playwright (Chromium)
and prints a performance report: load time, asset sizes, code coverage,
long tasks, memory usage and Blurb module render counts.
"""

import json
import os
import sys

from dotenv import load_dotenv

from divi_metrics import (
    CollaboratorFailure,
    TelemetrySnapshot,
    compute_report,
    coverage_entry_from_script,
    coverage_entry_from_stylesheet,
    heap_used_from_metrics,
    parse_performance_entries,
    parse_trace,
    response_record_from_cdp,
)

load_dotenv()

# Configuration
LOGIN_URL = os.environ.get('LOGIN_URL', '')
VB_URL = os.environ.get('VB_URL', '')
WP_USERNAME = os.environ.get('WP_USERNAME', 'admin')
WP_PASSWORD = os.environ.get('WP_PASSWORD', 'admin')
TRACE_PATH = os.environ.get('TRACE_PATH', 'trace.json')
REQUEST_TIMEOUT = 60000  # 60 seconds for page load
SLOW_MO = 50
VIEWPORT = {'width': 1920, 'height': 1080}

VB_FRAME_SELECTOR = 'iframe#et-vb-app-frame'
BLURB_SELECTOR = '.et_pb_blurb_content'

NAVIGATION_TIMING_SCRIPT = '''() => {
    const timing = window.performance.getEntriesByType('navigation')[0];
    if (!timing) return null;
    const navigationStart = timing.navigationStart ?? 0;
    return timing.loadEventEnd - navigationStart;
}'''
PERFORMANCE_ENTRIES_SCRIPT = '() => JSON.stringify(window.performance.getEntries())'

MB = 1000000


class PerformanceTracker:
    """Divi Visual Builder performance tracker"""

    def __init__(self, vb_url, login_url):
        self.vb_url = vb_url
        self.login_url = login_url
        self.browser = None
        self.context = None
        self.page = None
        self.cdp = None
        self.snapshot = TelemetrySnapshot()
        self.report = None
        self.scripts = {}
        self.stylesheets = {}

    def init(self):
        """Initialize the browser and page"""
        from playwright.sync_api import sync_playwright

        self.playwright = sync_playwright().start()
        self.browser = self.playwright.chromium.launch(
            headless=True,
            args=[
                '--ignore-certificate-errors',
                '--window-size=1920,1080'
            ],
            slow_mo=SLOW_MO
        )
        self.context = self.browser.new_context(
            viewport=VIEWPORT,
            ignore_https_errors=True
        )
        self.page = self.context.new_page()

    def login_to_wordpress(self):
        """Log into wp-admin so the builder page is reachable"""
        page = self.context.new_page()
        try:
            page.goto(self.login_url, timeout=REQUEST_TIMEOUT)
            page.fill('#user_login', WP_USERNAME)
            page.fill('#user_pass', WP_PASSWORD)
            page.click('#wp-submit')
            page.wait_for_selector('#wpcontent', timeout=REQUEST_TIMEOUT)
        finally:
            page.close()
        print('Logged in successfully!\n')

    def start_capture(self):
        """Start tracing, network recording and JS/CSS coverage"""
        self.browser.start_tracing(page=self.page, path=TRACE_PATH, categories=['devtools.timeline'])

        self.cdp = self.context.new_cdp_session(self.page)
        self.cdp.on('Network.responseReceived', self._on_response)
        self.cdp.on('Debugger.scriptParsed', self._on_script_parsed)
        self.cdp.on('CSS.styleSheetAdded', self._on_stylesheet_added)

        self.cdp.send('Network.enable')
        self.cdp.send('Performance.enable')
        self.cdp.send('Profiler.enable')
        self.cdp.send('Profiler.startPreciseCoverage', {'callCount': False, 'detailed': True})
        self.cdp.send('Debugger.enable')
        self.cdp.send('DOM.enable')
        self.cdp.send('CSS.enable')
        self.cdp.send('CSS.startRuleUsageTracking')

    def _on_response(self, params):
        """Handle Network.responseReceived"""
        self.snapshot.responses.append(response_record_from_cdp(params))

    def _on_script_parsed(self, params):
        """Remember script URLs; anonymous scripts are not reported"""
        if params.get('url'):
            self.scripts[params['scriptId']] = params['url']

    def _on_stylesheet_added(self, params):
        """Remember stylesheet URLs; inline stylesheets are not reported"""
        header = params.get('header', {})
        if header.get('sourceURL'):
            self.stylesheets[header['styleSheetId']] = header['sourceURL']

    def load_page(self):
        """Load the builder page and capture telemetry"""
        print(f"Loading page: {self.vb_url}")

        try:
            self.page.goto(self.vb_url, wait_until='networkidle', timeout=REQUEST_TIMEOUT)
        except Exception as e:
            print(f"Error loading page: {e}")
            raise

        self.snapshot.trace_events = self._capture(
            'Long tasks', lambda: parse_trace(self.browser.stop_tracing()))
        self.collect_metrics()
        self.snapshot.js_coverage, self.snapshot.css_coverage = self.stop_coverage()
        self.snapshot.marks_initial = self._capture(
            'Blurb module metrics', self.get_blurb_module_marks)
        self.snapshot.marks_after_hover = self._capture(
            'Blurb module metrics after hover', self.get_blurb_module_marks_after_hover)

        print('Collected performance telemetry')

    def _capture(self, label, func):
        """Run one optional capture, recording a failure instead of raising"""
        try:
            return func()
        except Exception as e:
            failure = e if isinstance(e, CollaboratorFailure) else CollaboratorFailure(f"{label}: {e}")
            print(f"Warning: {failure}")
            self.snapshot.failures.append(failure)
            return None

    def collect_metrics(self):
        """Collect load time, asset counts and heap usage"""
        self.snapshot.load_time_ms = self._capture(
            'Load time', lambda: self.page.evaluate(NAVIGATION_TIMING_SCRIPT))
        self.snapshot.script_count = self._capture(
            'Scripts loaded', lambda: self.page.evaluate('() => document.scripts.length'))
        self.snapshot.stylesheet_count = self._capture(
            'CSS loaded', lambda: self.page.evaluate('() => document.styleSheets.length'))
        self.snapshot.heap_used_bytes = self._capture(
            'Memory usage', lambda: heap_used_from_metrics(self.cdp.send('Performance.getMetrics')))

    def stop_coverage(self):
        """Stop JS/CSS coverage and pair the used ranges with resource text"""
        js_entries = self._capture('JS coverage', self._stop_js_coverage)
        css_entries = self._capture('CSS coverage', self._stop_css_coverage)
        return js_entries, css_entries

    def _send_may_fail(self, method, params):
        """Send a per-resource CDP command; None if the resource is gone"""
        try:
            return self.cdp.send(method, params)
        except Exception as e:
            print(f"Warning: skipped {params}: {e}")
            return None

    def _stop_js_coverage(self):
        result = self.cdp.send('Profiler.takePreciseCoverage')
        self.cdp.send('Profiler.stopPreciseCoverage')

        entries = []
        for script in result.get('result', []):
            url = self.scripts.get(script['scriptId'])
            if not url:
                continue
            source = self._send_may_fail('Debugger.getScriptSource', {'scriptId': script['scriptId']})
            if source is None:
                continue
            entries.append(coverage_entry_from_script(url, script['functions'], source.get('scriptSource', '')))
        return entries

    def _stop_css_coverage(self):
        usage = self.cdp.send('CSS.stopRuleUsageTracking')

        by_sheet = {}
        for rule in usage.get('ruleUsage', []):
            by_sheet.setdefault(rule['styleSheetId'], []).append(rule)

        entries = []
        for sheet_id, url in self.stylesheets.items():
            result = self._send_may_fail('CSS.getStyleSheetText', {'styleSheetId': sheet_id})
            if result is None:
                continue
            entries.append(coverage_entry_from_stylesheet(url, by_sheet.get(sheet_id, []), result.get('text', '')))
        return entries

    def _builder_frame(self):
        handle = self.page.query_selector(VB_FRAME_SELECTOR)
        if handle is None:
            raise CollaboratorFailure(f"Frame not found: {VB_FRAME_SELECTOR}")
        frame = handle.content_frame()
        if frame is None:
            raise CollaboratorFailure(f"Frame has no content: {VB_FRAME_SELECTOR}")
        return frame

    def get_blurb_module_marks(self):
        """Performance entries of the builder frame right after load"""
        frame = self._builder_frame()
        return parse_performance_entries(frame.evaluate(PERFORMANCE_ENTRIES_SCRIPT))

    def get_blurb_module_marks_after_hover(self):
        """Performance entries of the builder frame after hovering one Blurb"""
        frame = self._builder_frame()
        element = frame.query_selector(BLURB_SELECTOR)
        if element is None:
            raise CollaboratorFailure(f"Element not found: {BLURB_SELECTOR}")
        element.hover(timeout=REQUEST_TIMEOUT)
        return parse_performance_entries(frame.evaluate(PERFORMANCE_ENTRIES_SCRIPT))

    def report_results(self):
        """Report results to console"""
        self.report = compute_report(self.snapshot)
        print(format_report(self.report))
        return self.report

    def close(self):
        """Clean up resources"""
        if self.cdp:
            self.cdp.detach()
        if self.page:
            self.page.close()
        if self.context:
            self.context.close()
        if self.browser:
            self.browser.close()
        if hasattr(self, 'playwright'):
            self.playwright.stop()


def _mb(value):
    return f"{value / MB:.2f} MB"


def _seconds(ms):
    return f"{ms / 1000:.2f}s"


def _or_unavailable(value, fmt):
    if value is None:
        return 'unavailable'
    return fmt(value)


def _coverage_line(label, summary):
    if not summary.available:
        return f"{label} Code coverage: unavailable (no coverage data)"
    return f"{label} Code coverage: {summary.percent_used:.2f}% ({_mb(summary.unused_bytes)}) not being used"


def format_report(report):
    """Render an AggregateReport as console text"""
    lines = [
        '-' * 75,
        '---------------------------- R E P O R T ----------------------------------',
        '-' * 75,
        f"Load time: {_or_unavailable(report.load_time_ms, _seconds)}",
        f"Total load size of all assets: {_mb(report.assets.total_load_size)}",
        f"Scripts loaded: {_or_unavailable(report.script_count, str)}",
        f"CSS loaded: {_or_unavailable(report.stylesheet_count, str)}",
        f"Total JS file size: {_mb(report.assets.js_size)}",
        f"Total CSS file size: {_mb(report.assets.css_size)}",
        f"Total image size: {_mb(report.assets.image_size)}",
        _coverage_line('JS', report.js_coverage),
        _coverage_line('CSS', report.css_coverage),
        f"Memory usage: {_or_unavailable(report.heap_used_bytes, _mb)}",
    ]

    tasks = [{'name': task.name, 'dur': task.duration} for task in report.long_tasks]
    lines.append(f"Top 5 long tasks: {json.dumps(tasks)}")

    module = report.module
    if module.rendered:
        lines.append(f"Blurb module was started to render after: {module.first_render_seconds:.2f}s")
    else:
        lines.append('Blurb module was started to render after: not rendered')
    lines.append(
        f"Blurb module was rendered: {_or_unavailable(module.initial_count, str)} times after VB initial loading")
    lines.append(
        f"Blurb module was rendered: {_or_unavailable(module.after_hover_count, str)} times after one hover interaction")

    if report.warnings:
        lines.append('')
        lines.append(f"Warnings: {len(report.warnings)}")
        for warning in report.warnings:
            lines.append(f"  ⚠️ {type(warning).__name__}: {warning}")

    lines.append('-' * 75)
    return '\n'.join(lines)


def main():
    for name, value in (('LOGIN_URL', LOGIN_URL), ('VB_URL', VB_URL)):
        if not value:
            print(f"Error: {name} environment variable is not set")
            sys.exit(1)

        # Validate URL format
        if not value.startswith(('http://', 'https://')):
            print(f"Error: Invalid {name} format. URL must start with http:// or https://")
            sys.exit(1)

    print(f"Starting Divi performance check for: {VB_URL}")
    print('=' * 60)

    tracker = PerformanceTracker(VB_URL, LOGIN_URL)

    try:
        tracker.init()
        tracker.login_to_wordpress()
        tracker.start_capture()
        tracker.load_page()
        tracker.report_results()
    except Exception as e:
        print(f"Error: {e}")
        tracker.close()
        sys.exit(1)

    tracker.close()


if __name__ == '__main__':
    main()
