import base64
import unittest
from unittest.mock import patch, Mock

import pytest
import requests

from errors import SourceHostError
from ingest.github import GitHubSourceClient, normalize_source_path, build_window
from storage.cache import Cache
from storage.retry import reset_retry

SOURCE = "line one\nline two\nline three\nline four\nline five"


def _resp(status, body=None):
    resp = Mock()
    resp.status_code = status
    resp.json.return_value = body
    resp.text = str(body)
    resp.headers = {}
    return resp


def _contents(text):
    return {'content': base64.b64encode(text.encode('utf-8')).decode('ascii'), 'encoding': 'base64'}


class TestGitHubSourceClient(unittest.TestCase):
    def setUp(self):
        reset_retry()
        self.client = GitHubSourceClient('tok', 'acme', 'app', max_retries=1, timeout=7)

    def test_fetch_window_normalizes_package_path(self):
        with patch('storage.retry.requests.request', return_value=_resp(200, _contents(SOURCE))) as mocked:
            window = self.client.fetch_file('package:app/main.dart', target_line=3, context_lines=1)
        self.assertEqual(window.path, 'lib/main.dart')
        self.assertEqual(window.content, "2: line two\n3: line three\n4: line four")
        self.assertEqual(window.full_content, SOURCE)
        self.assertEqual(window.total_lines, 5)
        method, url = mocked.call_args.args[:2]
        self.assertEqual(method, 'GET')
        self.assertTrue(url.endswith('/repos/acme/app/contents/lib/main.dart'))
        self.assertEqual(mocked.call_args.kwargs['params'], {'ref': 'main'})
        self.assertEqual(mocked.call_args.kwargs['timeout'], 7)
        self.assertEqual(mocked.call_args.kwargs['headers']['Authorization'], 'Bearer tok')

    def test_fetch_full_file_without_target_line(self):
        with patch('storage.retry.requests.request', return_value=_resp(200, _contents(SOURCE))):
            window = self.client.fetch_file('lib/main.dart')
        self.assertEqual(window.content, SOURCE)

    def test_exact_path_is_not_rewritten(self):
        with patch('storage.retry.requests.request', return_value=_resp(200, _contents(SOURCE))) as mocked:
            window = self.client.fetch_file('packages/core/src/a.dart', exact=True)
        self.assertEqual(window.path, 'packages/core/src/a.dart')
        self.assertTrue(mocked.call_args.args[1].endswith('/contents/packages/core/src/a.dart'))

    def test_missing_file_returns_none(self):
        with patch('storage.retry.requests.request', return_value=_resp(404, {'message': 'Not Found'})):
            self.assertIsNone(self.client.fetch_file('lib/missing.dart', 10))

    def test_server_error_raises(self):
        with patch('storage.retry.requests.request', return_value=_resp(500, {'message': 'boom'})):
            with self.assertRaises(SourceHostError) as ctx:
                self.client.fetch_file('lib/main.dart', 10)
        self.assertEqual(ctx.exception.status, 500)

    def test_timeout_raises_source_host_error(self):
        with patch('storage.retry.requests.request', side_effect=requests.Timeout('slow')), patch('storage.retry.time.sleep'):
            with self.assertRaises(SourceHostError) as ctx:
                self.client.fetch_file('lib/main.dart', 10)
        self.assertEqual(ctx.exception.status, 0)

    def test_fetch_uses_cache(self):
        client = GitHubSourceClient('tok', 'acme', 'app', cache=Cache(), max_retries=1)
        with patch('storage.retry.requests.request', return_value=_resp(200, _contents(SOURCE))):
            client.fetch_file('lib/main.dart')
        with patch('storage.retry.requests.request', side_effect=AssertionError('network used on cached file')):
            window = client.fetch_file('lib/main.dart', 1, 1)
        self.assertEqual(window.content, "1: line one\n2: line two")

    def test_expired_cached_file_is_refetched(self):
        cache = Cache(ttl_seconds=60)
        client = GitHubSourceClient('tok', 'acme', 'app', cache=cache, max_retries=1)
        with patch('storage.retry.requests.request', return_value=_resp(200, _contents(SOURCE))):
            client.fetch_file('lib/main.dart')
        cache.conn.execute('UPDATE http_cache SET timestamp = timestamp - 120')
        cache.conn.commit()
        with patch('storage.retry.requests.request', return_value=_resp(200, _contents("changed"))) as mocked:
            window = client.fetch_file('lib/main.dart')
        self.assertEqual(mocked.call_count, 1)
        self.assertEqual(window.full_content, 'changed')

    def test_search_by_filename_dedupes(self):
        body = {'items': [{'path': 'lib/found.dart'}, {'path': 'lib/found.dart'}, {'path': 'lib/old/found.dart'}]}
        with patch('storage.retry.requests.request', return_value=_resp(200, body)) as mocked:
            hits = self.client.search_by_filename('lib/missing/found.dart')
        self.assertEqual(hits, ['lib/found.dart', 'lib/old/found.dart'])
        self.assertTrue(mocked.call_args.args[1].endswith('/search/code'))
        self.assertEqual(mocked.call_args.kwargs['params']['q'], 'filename:found.dart repo:acme/app')

    def test_search_by_text_quotes_query(self):
        with patch('storage.retry.requests.request', return_value=_resp(200, {'items': []})) as mocked:
            self.assertEqual(self.client.search_by_text('_incrementCounter'), [])
        self.assertEqual(mocked.call_args.kwargs['params']['q'], '"_incrementCounter" repo:acme/app')

    def test_rejected_search_query_is_empty(self):
        with patch('storage.retry.requests.request', return_value=_resp(422, {'message': 'Validation Failed'})):
            self.assertEqual(self.client.search_by_filename('main.dart'), [])

    def test_search_host_failure_raises(self):
        for status in (500, 403, 401):
            with patch('storage.retry.requests.request', return_value=_resp(status, {'message': 'nope'})):
                with self.assertRaises(SourceHostError) as ctx:
                    self.client.search_by_text('_incrementCounter')
            self.assertEqual(ctx.exception.status, status)

    def test_unknown_search_terms_skip_network(self):
        with patch('storage.retry.requests.request', side_effect=AssertionError('no search expected')):
            self.assertEqual(self.client.search_by_text('unknown'), [])
            self.assertEqual(self.client.search_by_filename(''), [])


@pytest.mark.parametrize('raw,expected', [
    ('package:my_app/screens/home.dart', 'lib/screens/home.dart'),
    ('main.dart', 'lib/main.dart'),
    ('lib/main.dart', 'lib/main.dart'),
    ('test/widget_test.dart', 'test/widget_test.dart'),
    ('/screens/home.dart', 'lib/screens/home.dart'),
])
def test_normalize_source_path(raw, expected):
    assert normalize_source_path(raw) == expected


def test_build_window_clamps_to_file():
    window = build_window('lib/a.dart', SOURCE, target_line=1, context_lines=2)
    assert window.start_line == 1
    assert window.end_line == 3
    assert window.content.splitlines()[0] == '1: line one'
    window = build_window('lib/a.dart', SOURCE, target_line=5, context_lines=15)
    assert window.start_line == 1 and window.end_line == 5
    assert window.line_count == 5
