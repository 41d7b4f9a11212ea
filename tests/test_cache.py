import unittest
import tempfile
import os
import time
import sqlite3
from unittest.mock import patch, Mock

import requests

from storage.cache import Cache, rate_limited_get, rate_limited_request
from storage.retry import reset_retry

CONTENTS_KEY = 'github:contents:acme/app@main:lib/main.dart'


def _resp(status, body=None, headers=None):
    resp = Mock()
    resp.status_code = status
    resp.json.return_value = body
    resp.text = str(body)
    resp.headers = headers or {}
    return resp


class TestCacheBehavior(unittest.TestCase):
    def setUp(self):
        reset_retry()
        tmp = tempfile.NamedTemporaryFile(delete=False)
        self.path = tmp.name
        tmp.close()
        self.cache = Cache(self.path)

    def tearDown(self):
        self.cache.close()
        try:
            os.remove(self.path)
        except OSError:
            pass

    def test_cache_set_get(self):
        self.cache.set(CONTENTS_KEY, {'content': 'Zm9v'}, status=200)
        entry = self.cache.get(CONTENTS_KEY)
        self.assertIsNotNone(entry)
        self.assertEqual(entry['response'], {'content': 'Zm9v'})
        self.assertEqual(entry['status'], 200)
        self.assertIn('timestamp', entry)

    def test_stats_list_and_delete(self):
        self.cache.set('a', {'x': 1})
        self.cache.set('b', {'x': 2})
        self.assertEqual(self.cache.stats()['count'], 2)
        self.assertEqual({e['key'] for e in self.cache.list_keys()}, {'a', 'b'})
        self.assertEqual(self.cache.delete_key('a'), 1)
        self.assertIsNone(self.cache.get('a'))
        self.cache.clear()
        self.assertEqual(self.cache.list_keys(), [])

    def test_rate_limited_get_caches_response(self):
        with patch('storage.retry.requests.request', return_value=_resp(200, {'a': 1})) as mocked:
            res1 = rate_limited_get('http://example.com', headers={}, params={}, cache=self.cache, cache_key=CONTENTS_KEY, min_wait=0, timeout=5)
            self.assertEqual(res1['response'], {'a': 1})
            self.assertEqual(res1['status'], 200)
            self.assertEqual(mocked.call_args.kwargs['timeout'], 5)

        # cached hit must not reach the network
        with patch('storage.retry.requests.request', side_effect=AssertionError('requests.request should not be called on cached hit')):
            res2 = rate_limited_get('http://example.com', headers={}, params={}, cache=self.cache, cache_key=CONTENTS_KEY, min_wait=0)
            self.assertEqual(res2['response'], {'a': 1})

    def test_not_found_is_returned_and_not_cached(self):
        with patch('storage.retry.requests.request', return_value=_resp(404, {'message': 'Not Found'})) as mocked:
            res = rate_limited_get('http://example.com/missing', cache=self.cache, cache_key='missing', min_wait=0)
        self.assertEqual(res['status'], 404)
        self.assertEqual(mocked.call_count, 1)
        self.assertIsNone(self.cache.get('missing'))

    def test_rate_limited_get_respects_max_age(self):
        with patch('storage.retry.requests.request', return_value=_resp(200, {'a': 1})):
            rate_limited_get('http://example.com', cache=self.cache, cache_key='k3', min_wait=0)

        conn = sqlite3.connect(self.path)
        conn.execute('UPDATE http_cache SET timestamp = ? WHERE key = ?', (time.time() - 3600, 'k3'))
        conn.commit()
        conn.close()

        with patch('storage.retry.requests.request', return_value=_resp(200, {'a': 2})) as mocked:
            res = rate_limited_get('http://example.com', cache=self.cache, cache_key='k3', min_wait=0, max_age=5)
            self.assertEqual(res['response'], {'a': 2})
            self.assertTrue(mocked.called)

    def test_rate_limit_then_success(self):
        responses = [_resp(429, None, {'Retry-After': '0'}), _resp(200, {'ok': True})]
        with patch('storage.retry.requests.request', side_effect=responses), patch('storage.retry.time.sleep') as slept:
            res = rate_limited_get('http://example.com/rl', min_wait=0, max_retries=3)
        self.assertEqual(res['status'], 200)
        self.assertTrue(slept.called)

    def test_timeout_reports_status_zero(self):
        with patch('storage.retry.requests.request', side_effect=requests.Timeout('slow')), patch('storage.retry.time.sleep'):
            res = rate_limited_request('POST', 'http://example.com/gen', json_body={'q': 1}, min_wait=0, max_retries=2, timeout=1)
        self.assertEqual(res['status'], 0)
        self.assertIn('timeout', res['response'])


if __name__ == '__main__':
    unittest.main()
