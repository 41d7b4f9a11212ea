import csv
import io
import json

from report import renderer

ROWS = [
    {
        'crash_id': 'c1',
        'outcome': 'linked',
        'reason': None,
        'file_path': 'lib/main.dart',
        'line_number': 95,
        'fetch_via': 'direct',
        'action_id': 'checkout_submit',
        'confidence': 'high',
        'method': 'pattern',
        'component': 'checkout_submit',
        'component_status': 'maintenance',
        'crash_count': 3,
    },
    {'crash_id': 'c2', 'outcome': 'unlinked', 'reason': 'stack trace parsing failed'},
    {'crash_id': 'c3', 'outcome': 'failed', 'reason': 'source fetch failed: status 500'},
]


class _Result:
    def to_dict(self):
        return dict(ROWS[0])


def test_text_summary():
    out = renderer.render(ROWS, fmt='text')
    assert 'c1: linked to checkout_submit (high via pattern; 3 crashes, maintenance)' in out
    assert 'c2: unlinked (stack trace parsing failed)' in out
    assert out.splitlines()[-1] == '1 linked, 1 unlinked, 1 failed of 3'


def test_accepts_result_objects():
    out = renderer.render([_Result()], fmt='json')
    parsed = json.loads(out)
    assert parsed['summary'] == {'total': 1, 'linked': 1, 'unlinked': 0, 'failed': 0}
    assert parsed['results'][0]['action_id'] == 'checkout_submit'


def test_csv_has_header_and_blank_missing_values():
    rows = list(csv.reader(io.StringIO(renderer.render(ROWS, fmt='csv'))))
    assert rows[0] == renderer.COLUMNS
    assert rows[1][0] == 'c1'
    assert rows[2][renderer.COLUMNS.index('action_id')] == ''


def test_markdown_template():
    out = renderer.render(ROWS, fmt='md', generated_at='2026-01-01T00:00:00Z', scope='acme/app')
    assert out.startswith('# Crash Resolution Run')
    assert 'Scope: acme/app' in out
    assert '| c1 | linked | checkout_submit | checkout_submit | high |  |' in out
    assert '- Failed: **1**' in out


def test_html_template_escapes():
    rows = [dict(ROWS[1], reason='<script>alert(1)</script>')]
    out = renderer.render(rows, fmt='html')
    assert '<table>' in out
    assert '<script>alert(1)</script>' not in out
    assert '&lt;script&gt;' in out


def test_html_without_results():
    assert 'No crashes processed.' in renderer.render([], fmt='html')


def test_render_components():
    comps = [{'identifier': 'cart_clear', 'status': 'active', 'crash_count': 1, 'crash_threshold': 3, 'status_source': 'auto'}]
    assert renderer.render_components(comps) == 'cart_clear: active (1/3 crashes, auto)'
    assert json.loads(renderer.render_components(comps, 'json'))[0]['identifier'] == 'cart_clear'
    assert renderer.render_components([]) == 'no components'
