#!/usr/bin/env python3
"""
Unit tests for the import engine.

Runs the reconciler against in-memory collaborators and checks candidate
collection, normalize/filter rules, identity resolution, create-or-update
decisions, two-pass manager linking and the deactivation sweep.
"""

import os
import sys
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from idp_user_sync.config import ImportConfiguration
from idp_user_sync.directory import AuthType
from idp_user_sync.reconciler import (Reconciler, ImportResult, CandidateRejected, CandidateUser,
                                      ManagerRef, manager_ref)
from fakes import InMemoryUserDirectory, FakeProvisioner, FakeGroupDirectory, remote_user


def make_config(**overrides):
    return ImportConfiguration.from_dict(overrides)


class ReconcilerTestCase(unittest.TestCase):
    """Common fixture wiring."""

    def setUp(self):
        self.directory = InMemoryUserDirectory()
        self.provisioner = FakeProvisioner(self.directory)
        self.groups = FakeGroupDirectory()

    def reconciler(self, **config):
        return Reconciler(self.groups, self.directory, self.provisioner, make_config(**config))


class TestCollect(ReconcilerTestCase):

    def test_user_in_two_groups_is_merged(self):
        """A user in G1 and G2 yields one candidate labelled A then B."""
        alice = remote_user('00u1', 'alice', 'alice@example.com')
        self.groups.members = {'G1': [alice], 'G2': [dict(alice)]}

        candidates = self.reconciler().collect({'G1': 'A', 'G2': 'B'})

        self.assertEqual(list(candidates), ['00u1'])
        self.assertEqual(candidates['00u1'].groups, ['A', 'B'])

    def test_collection_keeps_first_seen_order(self):
        self.groups.members = {
            'G1': [remote_user('00u2', 'bob'), remote_user('00u1', 'alice')],
            'G2': [remote_user('00u3', 'carol'), remote_user('00u2', 'bob')],
        }

        candidates = self.reconciler().collect({'G1': 'A', 'G2': 'B'})

        self.assertEqual(list(candidates), ['00u2', '00u1', '00u3'])
        self.assertEqual(candidates['00u2'].groups, ['A', 'B'])
        self.assertEqual(candidates['00u3'].groups, ['B'])

    def test_empty_group_is_skipped(self):
        self.groups.members = {'G2': [remote_user('00u1', 'alice')]}

        candidates = self.reconciler().collect({'G1': 'A', 'G2': 'B'})

        self.assertEqual(candidates['00u1'].groups, ['B'])

    def test_members_without_id_are_ignored(self):
        self.groups.members = {'G1': [{'profile': {'login': 'ghost'}}, remote_user('00u1', 'alice')]}

        candidates = self.reconciler().collect({'G1': 'A'})

        self.assertEqual(list(candidates), ['00u1'])


class TestTransform(ReconcilerTestCase):

    def candidate(self, **profile):
        return CandidateUser('00u1', dict(profile, id='00u1'), ['A'])

    def test_normalize_runs_before_filter(self):
        reconciler = self.reconciler(fields={'email': {
            'normalize': {'enabled': True, 'pattern': '@.*$'},
            'filter': {'enabled': True, 'pattern': '^[a-z]+$'},
        }})

        profile = reconciler.transform(self.candidate(login='bob', email='bob@Example.com'))

        self.assertEqual(profile['email'], 'bob')

    def test_filter_rejects_non_matching_value(self):
        reconciler = self.reconciler(fields={'email': {'filter': {'enabled': True, 'pattern': '@example\\.com$'}}})

        with self.assertRaises(CandidateRejected):
            reconciler.transform(self.candidate(login='eve', email='eve@evil.org'))

    def test_value_empty_after_normalization_is_rejected(self):
        reconciler = self.reconciler(fields={'name': {'normalize': {'enabled': True, 'pattern': '.*'}}})

        with self.assertRaises(CandidateRejected):
            reconciler.transform(self.candidate(login='bob', email='bob@example.com'))

    def test_missing_value_fails_enabled_filter(self):
        reconciler = self.reconciler(fields={'phone_number': {'filter': {'enabled': True, 'pattern': '^\\+'}}})

        with self.assertRaises(CandidateRejected):
            reconciler.transform(self.candidate(login='bob', email='bob@example.com'))

    def test_disabled_rules_leave_profile_untouched(self):
        reconciler = self.reconciler(fields={'email': {'normalize': {'enabled': False, 'pattern': '@.*$'}}})

        profile = reconciler.transform(self.candidate(login='bob', email='bob@example.com'))

        self.assertEqual(profile['email'], 'bob@example.com')

    def test_rules_apply_in_declaration_order(self):
        """A filter on a later field sees the value normalized by its own rule only."""
        reconciler = self.reconciler(
            field_mappings={'email': 'email', 'name': 'preferred_username'},
            fields={
                'email': {'normalize': {'enabled': True, 'pattern': '^x-'}},
                'name': {'filter': {'enabled': True, 'pattern': '^x-'}},
            }
        )

        profile = reconciler.transform(self.candidate(login='x-bob', email='x-bob@example.com'))

        self.assertEqual(profile['email'], 'bob@example.com')
        self.assertEqual(profile['login'], 'x-bob')


class TestIdentityResolution(ReconcilerTestCase):

    def test_lookup_by_email(self):
        self.directory.add_user(7, 'alice', ['alice@example.com'])

        local_id = self.reconciler().resolve_identity('00u1', {'login': 'a', 'email': 'alice@example.com'})

        self.assertEqual(local_id, 7)

    def test_fallback_to_name(self):
        self.directory.add_user(4, 'alice', ['old@example.com'])

        local_id = self.reconciler().resolve_identity('00u1', {'login': 'alice', 'email': 'new@example.com'})

        self.assertEqual(local_id, 4)

    def test_lowest_id_wins_on_ties(self):
        self.directory.add_user(5, 'alice2', ['alice@example.com'])
        self.directory.add_user(3, 'alice1', ['alice@example.com'])

        local_id = self.reconciler().resolve_identity('00u1', {'login': 'x', 'email': 'alice@example.com'})

        self.assertEqual(local_id, 3)

    def test_locally_managed_accounts_are_not_matched(self):
        self.directory.add_user(2, 'alice', ['alice@example.com'], auth_type=AuthType.DB_LOCAL)

        local_id = self.reconciler().resolve_identity('00u1', {'login': 'alice', 'email': 'alice@example.com'})

        self.assertIsNone(local_id)

    def test_missing_duplicate_key_rejects(self):
        with self.assertRaises(CandidateRejected):
            self.reconciler().resolve_identity('00u1', {'login': 'alice'})

    def test_duplicate_key_on_name(self):
        self.directory.add_user(9, 'alice', [])

        local_id = self.reconciler(duplicate_key='name').resolve_identity('00u1', {'login': 'alice'})

        self.assertEqual(local_id, 9)


class TestCreateOrUpdate(ReconcilerTestCase):

    def test_new_user_is_provisioned_and_written(self):
        self.groups.members = {'G1': [remote_user('00u1', 'alice', 'alice@example.com', 'Alice', 'Smith')]}

        result = self.reconciler().import_users({'G1': 'Staff'})

        self.assertEqual(self.provisioner.calls, [{'login': 'alice', 'email': 'alice@example.com'}])
        new_id = result.imported[0]['id']
        self.assertEqual(self.directory.writes_of('profile'), [('profile', new_id, {
            'name': 'alice', 'given_name': 'Alice', 'family_name': 'Smith', 'email': 'alice@example.com'
        })])
        self.assertEqual(result.listed_ids, {new_id})
        self.assertEqual(result.volume, 1)

    def test_existing_user_without_full_import_is_not_written(self):
        self.directory.add_user(3, 'alice', ['alice@example.com'])
        self.groups.members = {'G1': [remote_user('00u1', 'alice', 'alice@example.com', 'Alice')]}

        result = self.reconciler().import_users({'G1': 'Staff'})

        self.assertEqual(self.directory.writes, [])
        self.assertEqual(result.imported, [])
        self.assertEqual(result.listed_ids, {3})

    def test_existing_user_with_full_import_is_overwritten(self):
        self.directory.add_user(3, 'alice', ['alice@example.com'], given_name='Al')
        self.groups.members = {'G1': [remote_user('00u1', 'alice', 'alice@example.com', 'Alice')]}

        result = self.reconciler().import_users({'G1': 'Staff'}, full_import=True)

        self.assertEqual(len(self.directory.writes_of('profile')), 1)
        self.assertEqual(self.directory.users[3]['fields']['given_name'], 'Alice')
        self.assertEqual([entry['id'] for entry in result.imported], [3])
        self.assertEqual(self.provisioner.calls, [])

    def test_groups_written_only_when_mapped(self):
        self.groups.members = {'G1': [remote_user('00u1', 'alice', 'alice@example.com')],
                               'G2': [remote_user('00u1', 'alice', 'alice@example.com')]}

        self.reconciler().import_users({'G1': 'A', 'G2': 'B'})
        self.assertNotIn('groups', self.directory.writes_of('profile')[0][2])

        self.directory.writes.clear()
        self.reconciler(groups_field='groups').import_users({'G1': 'A', 'G2': 'B'}, full_import=True)
        self.assertEqual(self.directory.writes_of('profile')[0][2]['groups'], ['A', 'B'])

    def test_first_matching_identity_wins(self):
        self.directory.add_user(3, 'alice', ['alice@example.com'])
        self.groups.members = {'G1': [
            remote_user('00u1', 'alice', 'alice@example.com', 'First'),
            remote_user('00u2', 'alice', 'alice@example.com', 'Second'),
        ]}

        result = self.reconciler().import_users({'G1': 'Staff'}, full_import=True)

        self.assertEqual(len(self.directory.writes_of('profile')), 1)
        self.assertEqual(self.directory.users[3]['fields']['given_name'], 'First')
        self.assertEqual([entry['remote_id'] for entry in result.listed], ['00u1'])

    def test_provisioning_failure_drops_candidate(self):
        self.provisioner.fail_for = {'bob'}
        self.provisioner.refuse_for = {'carol'}
        self.groups.members = {'G1': [
            remote_user('00u1', 'alice', 'alice@example.com'),
            remote_user('00u2', 'bob', 'bob@example.com'),
            remote_user('00u3', 'carol', 'carol@example.com'),
        ]}

        with self.assertLogs('idp_user_sync.reconciler', level='WARNING'):
            result = self.reconciler().import_users({'G1': 'Staff'})

        self.assertEqual([entry['remote_id'] for entry in result.imported], ['00u1'])
        self.assertEqual(len(result.listed_ids), 1)
        self.assertEqual(len(self.directory.users), 1)

    def test_rejected_candidates_are_counted(self):
        self.groups.members = {'G1': [
            remote_user('00u1', 'alice', 'alice@example.com'),
            remote_user('00u2', 'noemail'),
        ]}

        result = self.reconciler().import_users({'G1': 'Staff'})

        self.assertEqual(result.rejected, 1)
        self.assertEqual(len(self.provisioner.calls), 1)


class TestManagerLinking(ReconcilerTestCase):

    def test_manager_processed_after_report_is_linked(self):
        """B reports to A, and A comes after B in the membership listing."""
        self.groups.members = {'G1': [
            remote_user('00uB', 'bob', 'bob@x.com', manager_email='mgr@x.com'),
            remote_user('00uA', 'anna', 'mgr@x.com'),
        ]}

        result = self.reconciler().import_users({'G1': 'Staff'})

        ids = {entry['remote_id']: entry['id'] for entry in result.listed}
        self.assertEqual(self.directory.users[ids['00uB']]['supervisor_id'], ids['00uA'])
        self.assertEqual(result.unresolved_managers, {})
        # First pass missed, second pass found
        self.assertEqual(self.directory.email_lookups.count('mgr@x.com'), 3)

    def test_known_manager_is_linked_immediately(self):
        self.directory.add_user(1, 'anna', ['mgr@x.com'])
        self.groups.members = {'G1': [remote_user('00uB', 'bob', 'bob@x.com', manager_email='mgr@x.com')]}

        result = self.reconciler().import_users({'G1': 'Staff'})

        bob_id = result.listed[0]['id']
        self.assertEqual(self.directory.writes_of('supervisor'), [('supervisor', bob_id, 1)])

    def test_unresolved_manager_is_reported(self):
        self.groups.members = {'G1': [remote_user('00uB', 'bob', 'bob@x.com', manager_email='gone@x.com')]}

        with self.assertLogs('idp_user_sync.reconciler', level='WARNING') as logs:
            result = self.reconciler().import_users({'G1': 'Staff'})

        bob_id = result.listed[0]['id']
        self.assertEqual(result.unresolved_managers, {bob_id: 'gone@x.com'})
        self.assertIsNone(self.directory.users[bob_id]['supervisor_id'])
        self.assertTrue(any('gone@x.com' in line for line in logs.output))

    def test_manager_linked_for_existing_user_without_full_import(self):
        self.directory.add_user(1, 'anna', ['mgr@x.com'])
        self.directory.add_user(2, 'bob', ['bob@x.com'])
        self.groups.members = {'G1': [remote_user('00uB', 'bob', 'bob@x.com', manager_email='mgr@x.com')]}

        self.reconciler().import_users({'G1': 'Staff'})

        self.assertEqual(self.directory.writes, [('supervisor', 2, 1)])

    def test_embedded_manager_resolved_through_candidate_email(self):
        report = remote_user('00uB', 'bob', 'bob@x.com', _embedded={'manager': {'id': '00uA'}})
        self.groups.members = {'G1': [report, remote_user('00uA', 'anna', 'anna@x.com')]}

        result = self.reconciler().import_users({'G1': 'Staff'})

        ids = {entry['remote_id']: entry['id'] for entry in result.listed}
        self.assertEqual(self.directory.users[ids['00uB']]['supervisor_id'], ids['00uA'])

    def test_manager_ref_sources(self):
        self.assertEqual(manager_ref({'_embedded': {'manager': {'id': 'm1', 'profile': {'email': 'm@x'}}}}),
                         ManagerRef('m1', 'm@x'))
        self.assertEqual(manager_ref({'manager': {'id': 'm2'}}), ManagerRef('m2', None))
        self.assertEqual(manager_ref({'profile': {'managerId': 'boss@x.com'}}), ManagerRef(None, 'boss@x.com'))
        self.assertEqual(manager_ref({'profile': {'managerId': '00u9'}}), ManagerRef('00u9', None))
        self.assertIsNone(manager_ref({'profile': {}}))


class TestDeactivationSweep(ReconcilerTestCase):

    def test_sweep_writes_only_changed_accounts(self):
        self.directory.add_user(1, 'one', is_active=True)
        self.directory.add_user(2, 'two', is_active=False)
        self.directory.add_user(3, 'three', is_active=True)

        result = ImportResult(listed_ids={1, 2})
        self.reconciler(deactivate_unlisted=True).sweep(result)

        self.assertEqual(self.directory.writes, [('active', 2, True), ('active', 3, False)])
        self.assertEqual(result.activated, [2])
        self.assertEqual(result.deactivated, [3])

    def test_ldap_accounts_included_only_when_configured(self):
        self.directory.add_user(1, 'ext', is_active=True)
        self.directory.add_user(2, 'ldap', auth_type=AuthType.LDAP, is_active=True)
        self.directory.add_user(3, 'local', auth_type=AuthType.DB_LOCAL, is_active=True)

        self.reconciler(deactivate_unlisted=True).sweep(ImportResult())
        self.assertEqual(self.directory.writes, [('active', 1, False)])

        self.directory.writes.clear()
        self.directory.users[1]['is_active'] = True
        self.reconciler(deactivate_unlisted=True, include_ldap_in_deactivation=True).sweep(ImportResult())
        self.assertEqual(self.directory.writes, [('active', 1, False), ('active', 2, False)])

    def test_sweep_skips_auth_types_the_directory_does_not_search(self):
        self.directory = InMemoryUserDirectory(auth_types=[AuthType.EXTERNAL])
        self.directory.add_user(1, 'ext', is_active=True)
        self.directory.add_user(2, 'ldap', auth_type=AuthType.LDAP, is_active=True)

        self.reconciler(deactivate_unlisted=True, include_ldap_in_deactivation=True).sweep(ImportResult())

        self.assertEqual(self.directory.writes, [('active', 1, False)])

    def test_full_run_reactivates_listed_and_deactivates_unlisted(self):
        self.directory.add_user(1, 'alice', ['alice@example.com'], is_active=False)
        self.directory.add_user(2, 'bob', ['bob@example.com'], is_active=True)
        self.groups.members = {'G1': [remote_user('00u1', 'alice', 'alice@example.com')]}

        result = self.reconciler(deactivate_unlisted=True).import_users({'G1': 'Staff'})

        self.assertTrue(self.directory.users[1]['is_active'])
        self.assertFalse(self.directory.users[2]['is_active'])
        self.assertEqual((result.activated, result.deactivated), ([1], [2]))

    def test_no_sweep_when_disabled(self):
        self.directory.add_user(1, 'stale', ['stale@example.com'], is_active=True)

        self.reconciler().import_users({'G1': 'Staff'})

        self.assertTrue(self.directory.users[1]['is_active'])

    def test_rejected_user_listed_when_configured(self):
        self.directory.add_user(1, 'alice', ['alice@contractor.org'], is_active=True)
        self.groups.members = {'G1': [remote_user('00u1', 'alice', 'alice@contractor.org')]}
        rules = {'email': {'filter': {'enabled': True, 'pattern': '@example\\.com$'}}}

        self.reconciler(deactivate_unlisted=True, fields=rules).import_users({'G1': 'Staff'})
        self.assertFalse(self.directory.users[1]['is_active'])

        self.directory.users[1]['is_active'] = True
        self.reconciler(deactivate_unlisted=True, count_rejected_as_listed=True,
                        fields=rules).import_users({'G1': 'Staff'})
        self.assertTrue(self.directory.users[1]['is_active'])


class TestIdempotence(ReconcilerTestCase):

    def test_second_run_writes_nothing(self):
        self.directory.add_user(1, 'stale', ['stale@example.com'], is_active=True)
        self.groups.members = {
            'G1': [remote_user('00uB', 'bob', 'bob@x.com', 'Bob', manager_email='mgr@x.com'),
                   remote_user('00uA', 'anna', 'mgr@x.com', 'Anna')],
            'G2': [remote_user('00uA', 'anna', 'mgr@x.com', 'Anna')],
        }
        groups = {'G1': 'Staff', 'G2': 'Managers'}

        first = self.reconciler(deactivate_unlisted=True).import_users(groups)
        state = {user_id: (dict(user['fields']), list(user['emails']), user['is_active'], user['supervisor_id'])
                 for user_id, user in self.directory.users.items()}
        self.directory.writes.clear()

        second = self.reconciler(deactivate_unlisted=True).import_users(groups)

        self.assertEqual(self.directory.writes, [])
        self.assertEqual(second.imported, [])
        self.assertEqual(second.listed_ids, first.listed_ids)
        self.assertEqual(len(self.directory.users), 3)
        self.assertEqual({user_id: (dict(user['fields']), list(user['emails']), user['is_active'],
                                    user['supervisor_id'])
                          for user_id, user in self.directory.users.items()}, state)


class TestSingleUserImport(ReconcilerTestCase):

    def test_single_user_gets_every_authorized_group(self):
        self.groups.users = {'00u1': remote_user('00u1', 'alice', 'alice@example.com')}

        result = self.reconciler(groups_field='groups').import_users({'G1': 'A', 'G2': 'B'}, user_id='00u1')

        self.assertEqual(self.groups.fetched, ['00u1'])
        self.assertEqual(self.directory.writes_of('profile')[0][2]['groups'], ['A', 'B'])
        self.assertEqual(result.volume, 1)

    def test_single_user_skips_sweep(self):
        self.directory.add_user(1, 'bob', ['bob@example.com'], is_active=True)
        self.groups.users = {'00u1': remote_user('00u1', 'alice', 'alice@example.com')}

        self.reconciler(deactivate_unlisted=True).import_users({'G1': 'A'}, user_id='00u1')

        self.assertTrue(self.directory.users[1]['is_active'])

    def test_unknown_user_imports_nothing(self):
        with self.assertLogs('idp_user_sync.reconciler', level='WARNING'):
            result = self.reconciler().import_users({'G1': 'A'}, user_id='00uX')

        self.assertEqual(result.imported, [])
        self.assertEqual(self.directory.writes, [])


if __name__ == '__main__':
    unittest.main()
