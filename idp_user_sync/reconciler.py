"""
Import engine reconciling IdP group membership with the local user store.

One run goes through these phases:

1. Collect: merge the members of every authorized group into candidates
   keyed by remote id, accumulating group labels in order.
2. Transform: per configured field, strip the normalize pattern, then
   require the filter pattern. A failing candidate is rejected.
3. Identity: find the local account by the duplicate key, falling back to
   the login name, among externally managed accounts.
4. Create or update: provision unknown identities, overwrite profiles of
   known ones on full import, otherwise leave them alone.
5. Manager linking: link supervisors by email; links whose manager is not
   known yet are retried once after every candidate has been placed.
6. Deactivation sweep: deactivate unlisted active accounts and reactivate
   listed inactive ones.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Any, Optional, Set

from .config import ImportConfiguration, LocalField
from .directory import UserDirectory, AuthType
from .groups import GroupDirectory
from .logging_setup import AuditLogger, audit_logger
from .provisioning import Provisioner, ProvisioningError

logger = logging.getLogger(__name__)


class CandidateRejected(Exception):
    """A candidate cannot be placed in this run."""

    def __init__(self, remote_id: str, reason: str):
        self.remote_id = remote_id
        self.reason = reason
        super().__init__(f"{remote_id}: {reason}")


@dataclass(frozen=True)
class ManagerRef:
    remote_id: Optional[str] = None
    email: Optional[str] = None


@dataclass
class CandidateUser:
    """A remote user merged across every authorized group it belongs to."""
    remote_id: str
    profile: Dict[str, Any]
    groups: List[str] = field(default_factory=list)
    manager: Optional[ManagerRef] = None


@dataclass
class ImportResult:
    """
    Outcome of one import run.

    ``listed`` holds every user considered present in the IdP this run;
    ``imported`` the users that were created or had their profile overwritten.
    """
    listed: List[Dict[str, Any]] = field(default_factory=list)
    imported: List[Dict[str, Any]] = field(default_factory=list)
    rejected: int = 0
    activated: List[int] = field(default_factory=list)
    deactivated: List[int] = field(default_factory=list)
    unresolved_managers: Dict[int, str] = field(default_factory=dict)
    listed_ids: Set[int] = field(default_factory=set)

    @property
    def volume(self) -> int:
        return len(self.imported)

    def as_stats(self) -> Dict[str, Any]:
        return {
            'listed': len(self.listed_ids),
            'imported': len(self.imported),
            'rejected': self.rejected,
            'activated': len(self.activated),
            'deactivated': len(self.deactivated),
            'unresolved_managers': len(self.unresolved_managers),
        }


class _ImportRun:
    """State shared across the phases of a single run."""

    def __init__(self):
        self.result = ImportResult()
        self.candidates: Dict[str, CandidateUser] = {}
        self.pending_managers: Dict[int, str] = {}
        self.bound: Dict[int, str] = {}


def manager_ref(user: Dict[str, Any]) -> Optional[ManagerRef]:
    """
    Extract the manager reference carried by a remote user.

    Looks at the expanded ``_embedded.manager`` record, then a top-level
    ``manager`` record, then the ``managerId`` profile attribute, which
    holds an email address or a remote id.
    """
    embedded = (user.get('_embedded') or {}).get('manager')
    for record in (embedded, user.get('manager')):
        if isinstance(record, dict) and (record.get('id') or record.get('profile')):
            email = (record.get('profile') or {}).get('email')
            return ManagerRef(record.get('id'), email or None)

    manager_id = (user.get('profile') or {}).get('managerId')
    if not manager_id:
        return None
    manager_id = str(manager_id).strip()
    if '@' in manager_id:
        return ManagerRef(None, manager_id)
    return ManagerRef(manager_id, None)


class Reconciler:
    """Runs imports of IdP users into the local user store."""

    def __init__(self, groups: GroupDirectory, directory: UserDirectory, provisioner: Provisioner,
                 config: ImportConfiguration, audit: Optional[AuditLogger] = None):
        self.groups = groups
        self.directory = directory
        self.provisioner = provisioner
        self.config = config
        self.audit = audit or audit_logger

    def import_users(self, authorized_groups: Dict[str, str], full_import: bool = False,
                     user_id: Optional[str] = None) -> ImportResult:
        """
        Import users from the authorized groups.

        Args:
            authorized_groups: Group id -> label of the groups to import from
            full_import: Overwrite the profile of accounts that already exist
            user_id: Refresh only this remote user; its groups are all authorized labels

        Returns:
            ImportResult for the run

        Raises:
            StoreError: If the local store fails
        """
        run = _ImportRun()

        if user_id:
            remote_user = self.groups.fetch_user(user_id)
            if remote_user is None:
                logger.warning(f"Remote user {user_id} not available, nothing imported")
                return run.result
            candidate = self._candidate(remote_user, list(authorized_groups.values()))
            run.candidates[candidate.remote_id] = candidate
        else:
            run.candidates = self.collect(authorized_groups)

        logger.info(f"Processing {len(run.candidates)} candidate(s) from {len(authorized_groups)} group(s)")
        for candidate in run.candidates.values():
            self._place(run, candidate, full_import)

        self._resolve_pending_managers(run)

        if self.config.deactivate_unlisted and not user_id:
            self.sweep(run.result)

        logger.info(f"Import finished: {run.result.as_stats()}")
        return run.result

    def collect(self, authorized_groups: Dict[str, str]) -> Dict[str, CandidateUser]:
        """Merge group memberships into candidates keyed by remote id, in first-seen order."""
        candidates: Dict[str, CandidateUser] = {}
        for group_id, label in authorized_groups.items():
            members = self.groups.members_of(group_id)
            if not members:
                logger.info(f"Group {label} ({group_id}) returned no members")
                continue
            for user in members:
                remote_id = user.get('id')
                if not remote_id:
                    continue
                if remote_id in candidates:
                    candidates[remote_id].groups.append(label)
                else:
                    candidates[remote_id] = self._candidate(user, [label])
        return candidates

    @staticmethod
    def _candidate(user: Dict[str, Any], groups: List[str]) -> CandidateUser:
        profile = dict(user.get('profile') or {})
        profile['id'] = user['id']
        return CandidateUser(user['id'], profile, list(groups), manager_ref(user))

    def transform(self, candidate: CandidateUser) -> Dict[str, Any]:
        """
        Apply normalize and filter rules in field declaration order.

        Returns:
            Copy of the remote profile with normalized values

        Raises:
            CandidateRejected: If a value normalizes to nothing or fails its filter
        """
        profile = dict(candidate.profile)
        for rule in self.config.field_rules:
            value = profile.get(rule.remote_attribute)
            if rule.normalize is not None:
                value = rule.normalize.sub('', '' if value is None else str(value))
                if value == '':
                    raise CandidateRejected(candidate.remote_id, f"{rule.field.value} is empty after normalization")
                profile[rule.remote_attribute] = value
            if rule.filter is not None:
                if not rule.filter.search('' if value is None else str(value)):
                    raise CandidateRejected(candidate.remote_id, f"{rule.field.value} does not match filter")
        return profile

    def resolve_identity(self, remote_id: str, profile: Dict[str, Any]) -> Optional[int]:
        """
        Find the local account for a transformed profile.

        Raises:
            CandidateRejected: If the duplicate key has no value
        """
        key = self.config.duplicate_key
        value = profile.get(self.config.remote_attribute(key))
        if value is None or value == '':
            raise CandidateRejected(remote_id, f"no value for duplicate key {key.value}")

        local_id = self.directory.find_user_id_by_field(key, value)
        if local_id is None and key is not LocalField.NAME:
            name_attribute = self.config.remote_attribute(LocalField.NAME)
            if name_attribute:
                local_id = self.directory.find_user_id_by_name(profile.get(name_attribute))
        return local_id

    def _local_profile(self, profile: Dict[str, Any], groups: List[str]) -> Dict[str, Any]:
        local = {}
        for rule in self.config.field_rules:
            value = profile.get(rule.remote_attribute)
            if value is not None:
                local[rule.field.value] = value
        if self.config.groups_field:
            local[self.config.groups_field] = list(groups)
        return local

    def _place(self, run: _ImportRun, candidate: CandidateUser, full_import: bool):
        result = run.result
        try:
            profile = self.transform(candidate)
        except CandidateRejected as e:
            logger.debug(f"Candidate rejected: {e}")
            result.rejected += 1
            if self.config.count_rejected_as_listed:
                self._list_rejected(run, candidate)
            return

        try:
            local_id = self.resolve_identity(candidate.remote_id, profile)
        except CandidateRejected as e:
            logger.debug(f"Candidate rejected: {e}")
            result.rejected += 1
            return

        if local_id is not None and local_id in run.bound:
            logger.info(f"Local account {local_id} already bound to remote user {run.bound[local_id]}, "
                        f"skipping remote user {candidate.remote_id}")
            return

        local_profile = self._local_profile(profile, candidate.groups)
        imported = False

        if local_id is None:
            local_id = self._provision(candidate, local_profile)
            if local_id is None:
                return
            self.directory.write_profile(local_id, local_profile)
            imported = True
        elif full_import:
            self.directory.write_profile(local_id, local_profile)
            self.audit.profile_overwritten(local_id, candidate.remote_id, local_profile.keys())
            imported = True

        run.bound[local_id] = candidate.remote_id
        entry = dict(local_profile, id=local_id, remote_id=candidate.remote_id)
        result.listed.append(entry)
        result.listed_ids.add(local_id)
        if imported:
            result.imported.append(entry)

        self._link_manager(run, local_id, candidate)

    def _provision(self, candidate: CandidateUser, local_profile: Dict[str, Any]) -> Optional[int]:
        hint = {
            'login': local_profile.get(LocalField.NAME.value),
            'email': local_profile.get(LocalField.EMAIL.value),
        }
        try:
            local_id = self.provisioner.provision(local_profile, hint)
        except ProvisioningError as e:
            logger.warning(f"Could not create account for remote user {candidate.remote_id}: {e}")
            return None
        if local_id is None:
            logger.warning(f"Account creation refused for remote user {candidate.remote_id}")
            return None
        self.audit.account_created(local_id, candidate.remote_id, hint['login'] or hint['email'])
        return local_id

    def _list_rejected(self, run: _ImportRun, candidate: CandidateUser):
        # Rejected users that already have an account stay active
        try:
            local_id = self.resolve_identity(candidate.remote_id, candidate.profile)
        except CandidateRejected:
            return
        if local_id is not None:
            run.result.listed_ids.add(local_id)

    def _manager_email(self, run: _ImportRun, candidate: CandidateUser) -> Optional[str]:
        ref = candidate.manager
        if ref is None:
            return None
        if ref.email:
            return ref.email
        manager = run.candidates.get(ref.remote_id)
        if manager is not None:
            return manager.profile.get('email') or None
        logger.debug(f"Manager {ref.remote_id} of {candidate.remote_id} has no known email")
        return None

    def _link_manager(self, run: _ImportRun, local_id: int, candidate: CandidateUser):
        email = self._manager_email(run, candidate)
        if not email:
            return
        manager_id = self.directory.find_user_id_by_email(email)
        if manager_id is None:
            run.pending_managers[local_id] = email
            return
        self._set_supervisor(local_id, manager_id)

    def _set_supervisor(self, local_id: int, manager_id: int):
        if manager_id == local_id:
            logger.warning(f"User {local_id} is listed as their own manager, link skipped")
            return
        if self.directory.update_supervisor(local_id, manager_id):
            self.audit.supervisor_linked(local_id, manager_id)

    def _resolve_pending_managers(self, run: _ImportRun):
        """Second and last attempt at links whose manager was unknown during placement."""
        for local_id, email in run.pending_managers.items():
            manager_id = self.directory.find_user_id_by_email(email)
            if manager_id is None:
                logger.warning(f"Could not resolve manager for user {local_id}: "
                               f"manager email '{email}' not found locally")
                run.result.unresolved_managers[local_id] = email
                continue
            self._set_supervisor(local_id, manager_id)
        run.pending_managers.clear()

    def sweep(self, result: ImportResult):
        """
        Align the active flag of externally managed accounts with the listed set.

        Only auth types the directory also searches are swept; an account the
        lookups can never match is never listed and must not be touched.
        """
        auth_types = [AuthType.EXTERNAL]
        if self.config.include_ldap_in_deactivation:
            auth_types.append(AuthType.LDAP)
        auth_types = [auth_type for auth_type in auth_types if int(auth_type) in self.directory.auth_types]
        if not auth_types:
            logger.warning("No swept auth type is searched by the user directory, sweep skipped")
            return

        for account in self.directory.list_accounts(auth_types):
            listed = account.id in result.listed_ids
            if not listed and account.is_active:
                self.directory.set_active(account.id, False)
                result.deactivated.append(account.id)
                self.audit.activation_changed(account.id, False)
            elif listed and not account.is_active:
                self.directory.set_active(account.id, True)
                result.activated.append(account.id)
                self.audit.activation_changed(account.id, True)

        logger.info(f"Deactivation sweep: {len(result.deactivated)} deactivated, "
                    f"{len(result.activated)} reactivated")
