import time
import unittest

import pytest

from normalize.models import CrashReport
from storage.store import CrashStore


def _crash(crash_id, created_at, stack='lib/main.dart in f at line 1:1', **kw):
    return CrashReport(crash_id, 'proj', kw.pop('message', 'Bad state'), stack, created_at=created_at, **kw)


class TestCrashStore(unittest.TestCase):
    def setUp(self):
        self.store = CrashStore()

    def tearDown(self):
        self.store.close()

    def test_add_crash_once_and_normalize_version(self):
        self.assertTrue(self.store.add_crash(_crash('c1', 1.0, app_version='my_app@2.1.0+14')))
        self.assertFalse(self.store.add_crash(_crash('c1', 1.0)))
        stored = self.store.get_crash('c1')
        self.assertEqual(stored.app_version, '2.1.0')
        self.assertEqual(self.store.get_crash_state('c1')['status'], 'pending')
        self.assertIsNone(self.store.get_crash('nope'))

    def test_unlinked_selection_is_oldest_first(self):
        self.store.add_crash(_crash('new', 30.0))
        self.store.add_crash(_crash('old', 10.0))
        self.store.add_crash(_crash('mid', 20.0))
        self.store.add_crash(_crash('no-trace', 5.0, stack=None))
        comp, _ = self.store.create_component('proj', 'checkout_submit')
        self.store.link_crash('mid', comp.component_id, {'x': 1})
        self.assertEqual([c.crash_id for c in self.store.list_unlinked_crashes(10)], ['old', 'new'])
        self.assertEqual([c.crash_id for c in self.store.list_unlinked_crashes(1)], ['old'])

    def test_mark_crash_merges_analysis(self):
        self.store.add_crash(_crash('c1', 1.0))
        self.store.mark_crash('c1', 'unlinked', 'source fetch failed', {'stage': 'fetch'})
        self.store.mark_crash('c1', 'unlinked', 'no action id found', {'extraction': {'confidence': 'none'}})
        state = self.store.get_crash_state('c1')
        self.assertEqual(state['reason'], 'no action id found')
        self.assertEqual(state['analysis'], {'stage': 'fetch', 'extraction': {'confidence': 'none'}})

    def test_create_component_is_find_or_create(self):
        first, created = self.store.create_component('proj', 'cart_clear', name='Cart', crash_threshold=5)
        again, created_again = self.store.create_component('proj', 'cart_clear', name='Other')
        self.assertTrue(created)
        self.assertFalse(created_again)
        self.assertEqual(first.component_id, again.component_id)
        self.assertEqual(again.name, 'Cart')
        self.assertEqual(again.crash_threshold, 5)
        self.assertEqual(again.status, 'active')
        self.assertEqual(len(self.store.list_components('proj')), 1)

    def test_upsert_error_counts_each_crash_once(self):
        comp, _ = self.store.create_component('proj', 'cart_clear')
        rec, created, counted = self.store.upsert_error(comp, 'c1', 'Bad state', 'trace', 'cart_clear', '1.0.0', 2, {'m': 1})
        self.assertTrue(created and counted)
        self.assertEqual(rec.event_count, 2)
        rec, created, counted = self.store.upsert_error(comp, 'c1', 'Bad state', 'trace', 'cart_clear', '1.0.1', 2, {'m': 2})
        self.assertFalse(created or counted)
        self.assertEqual(rec.event_count, 2)
        self.assertEqual(rec.app_version, '1.0.1')
        self.assertEqual(rec.metadata, {'m': 2})
        rec, created, counted = self.store.upsert_error(comp, 'c2', 'Bad state', 'trace', 'cart_clear', '1.0.1', 1, {})
        self.assertTrue(counted)
        self.assertFalse(created)
        self.assertEqual(rec.event_count, 3)
        self.assertEqual(len(self.store.list_errors(comp.component_id)), 1)

    def test_compare_and_set_rejects_stale_revision(self):
        comp, _ = self.store.create_component('proj', 'a')
        self.assertTrue(self.store.compare_and_set_aggregate(comp.component_id, comp.revision, 1, 'active'))
        self.assertFalse(self.store.compare_and_set_aggregate(comp.component_id, comp.revision, 2, 'active'))
        self.assertEqual(self.store.get_component_by_id(comp.component_id).crash_count, 1)

    def test_archive_errors_older_than(self):
        comp, _ = self.store.create_component('proj', 'a')
        self.store.upsert_error(comp, 'c1', 'old error', None, 'a', '1.0', 1, {})
        self.store.upsert_error(comp, 'c2', 'new error', None, 'a', '1.0', 1, {})
        self.store.conn.execute("UPDATE component_errors SET last_seen = ? WHERE error_message = 'old error'", (time.time() - 40 * 86400,))
        self.assertEqual(self.store.archive_errors_older_than(30), 1)
        active = self.store.list_errors(comp.component_id, include_archived=False)
        self.assertEqual([e.error_message for e in active], ['new error'])

    def test_component_status_defaults_to_active(self):
        self.store.create_component('proj', 'a')
        self.store.set_component_status('proj', 'a', 'maintenance', fallback_message='Back soon')
        status = self.store.component_status('proj', ['a', 'never_seen'])
        self.assertEqual(status['a'], {'status': 'maintenance', 'fallback_message': 'Back soon'})
        self.assertEqual(status['never_seen'], {'status': 'active', 'fallback_message': None})

    def test_manual_status_and_clear_override(self):
        self.store.create_component('proj', 'a')
        comp = self.store.set_component_status('proj', 'a', 'deprecated')
        self.assertTrue(comp.is_manual)
        comp = self.store.clear_override('proj', 'a')
        self.assertFalse(comp.is_manual)
        self.assertEqual(comp.status, 'deprecated')

    def test_version_stats_and_actions(self):
        comp, _ = self.store.create_component('proj', 'a')
        self.store.increment_version_stat(comp.component_id, '1.0.0', crashes=1)
        self.store.record_action('proj', 'a', '1.0.0')
        stat = self.store.record_action('proj', 'a', '1.0.0')
        self.assertEqual((stat.crash_count, stat.action_count), (1, 2))
        self.assertIsNone(self.store.record_action('proj', 'missing', '1.0.0'))

    def test_record_action_normalizes_release(self):
        comp, _ = self.store.create_component('proj', 'a')
        self.store.record_action('proj', 'a', 'my_app@1.0.0+3')
        self.assertEqual(self.store.get_version_stat(comp.component_id, '1.0.0').action_count, 1)


def test_invalid_status_rejected():
    store = CrashStore()
    store.create_component('proj', 'a')
    with pytest.raises(ValueError):
        store.set_component_status('proj', 'a', 'broken')
    store.close()


def test_store_persists_to_file(tmp_path):
    path = str(tmp_path / 'state.db')
    with CrashStore(path) as store:
        store.add_crash(_crash('c1', 1.0))
    with CrashStore(path) as store:
        assert store.get_crash('c1').error_message == 'Bad state'
