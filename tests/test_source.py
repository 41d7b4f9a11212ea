import unittest

import pytest

from correlate.models import CrashLocation
from errors import SourceHostError
from fakes import FakeSourceHost, CHECKOUT_SOURCE
from ingest.source import SourceFetcher, VIA_DIRECT, VIA_FILENAME_SEARCH, VIA_TEXT_SEARCH


def _loc(path, line=95, function='_incrementCounter', origin='stack'):
    return CrashLocation(path, line, 7 if line else 0, function, f"{path} in {function} at line {line}:7", origin=origin)


class TestSourceFetcher(unittest.TestCase):
    def test_direct_fetch(self):
        host = FakeSourceHost(files={'lib/main.dart': CHECKOUT_SOURCE})
        result = SourceFetcher(host, context_lines=15).fetch(_loc('lib/main.dart', 10))
        self.assertTrue(result.found)
        self.assertEqual(result.via, VIA_DIRECT)
        self.assertEqual(result.attempts, ['lib/main.dart'])
        self.assertEqual(host.called('fetch')[0][3], 15)
        self.assertEqual(host.called('filename'), [])

    def test_missing_file_falls_back_to_filename_search(self):
        host = FakeSourceHost(files={'lib/found.dart': CHECKOUT_SOURCE}, filename_hits={'missing.dart': ['lib/found.dart', 'lib/found.dart']})
        result = SourceFetcher(host).fetch(_loc('lib/missing.dart'))
        self.assertEqual(result.via, VIA_FILENAME_SEARCH)
        self.assertEqual(result.window.path, 'lib/found.dart')
        self.assertEqual(result.attempts, ['lib/missing.dart', 'lib/found.dart'])
        self.assertEqual(host.called('text'), [])

    def test_text_search_when_filename_search_is_empty(self):
        host = FakeSourceHost(files={'lib/pages/counter.dart': CHECKOUT_SOURCE}, text_hits={'_incrementCounter': ['lib/pages/counter.dart']})
        result = SourceFetcher(host, context_lines=15, wide_context_lines=40).fetch(_loc('lib/main.dart', 12))
        self.assertEqual(result.via, VIA_TEXT_SEARCH)
        self.assertEqual(result.window.path, 'lib/pages/counter.dart')
        # filename search first, then text search, then the wider fetch
        kinds = [c[0] for c in host.calls]
        self.assertEqual(kinds, ['fetch', 'filename', 'text', 'fetch'])
        self.assertEqual(host.calls[-1][3], 40)

    def test_no_text_search_for_unknown_function(self):
        host = FakeSourceHost(text_hits={'unknown': ['lib/x.dart']})
        result = SourceFetcher(host).fetch(_loc('lib/main.dart', 0, 'unknown', origin='degraded'))
        self.assertFalse(result.found)
        self.assertIsNone(result.via)
        self.assertEqual(host.called('text'), [])

    def test_no_text_search_when_filename_search_had_hits(self):
        host = FakeSourceHost(filename_hits={'main.dart': ['lib/gone/main.dart']}, text_hits={'_incrementCounter': ['lib/x.dart']})
        result = SourceFetcher(host).fetch(_loc('lib/main.dart'))
        self.assertFalse(result.found)
        self.assertEqual(result.attempts, ['lib/main.dart', 'lib/gone/main.dart'])
        self.assertEqual(host.called('text'), [])

    def test_degraded_location_fetches_whole_file(self):
        host = FakeSourceHost(files={'lib/screens/home.dart': CHECKOUT_SOURCE})
        result = SourceFetcher(host).fetch(_loc('package:my_app/screens/home.dart', 0, 'unknown', origin='degraded'))
        self.assertTrue(result.found)
        self.assertEqual(result.window.content, CHECKOUT_SOURCE)


def test_host_error_propagates():
    host = FakeSourceHost(broken_paths={'lib/main.dart'})
    with pytest.raises(SourceHostError):
        SourceFetcher(host).fetch(_loc('lib/main.dart'))
