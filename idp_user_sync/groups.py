"""
Remote group and membership lookups.

Read-side access to the IdP directory: group listing, pattern selection of
authorized groups, paginated group membership and single-user fetches. Every
upstream failure is logged and degraded to "no data".
"""

import re
import logging
from typing import Dict, List, Any, Optional
from urllib.parse import quote

from .api_client import ApiClient, IdPError, parse_link_header

logger = logging.getLogger(__name__)


class FilterCompileError(Exception):
    """Raised when a group-name pattern is not a valid regular expression."""

    def __init__(self, pattern: str, error: re.error):
        self.pattern = pattern
        self.error = error
        super().__init__(f"Invalid group pattern '{pattern}': {error}")


class GroupDirectory:
    """Group and membership queries against the IdP."""

    def __init__(self, client: ApiClient):
        self.client = client

    def list_groups(self, query: Optional[str] = None) -> Dict[str, str]:
        """
        List remote groups.

        Args:
            query: Optional name prefix passed to the IdP as ``q``

        Returns:
            Mapping of group id to group name, empty on any upstream failure
        """
        uri = 'api/v1/groups'
        if query:
            uri += '?q=' + quote(query)

        try:
            response = self.client.request(uri)
        except IdPError as e:
            logger.error(f"Failed to list IdP groups: {e}")
            return {}

        groups = {}
        for group in response.body if isinstance(response.body, list) else []:
            group_id = group.get('id')
            name = (group.get('profile') or {}).get('name')
            if group_id and name is not None:
                groups[group_id] = name

        logger.debug(f"Retrieved {len(groups)} IdP groups")
        return groups

    def groups_by_pattern(self, pattern: str) -> Dict[str, str]:
        """
        Select groups whose name matches ``pattern`` case-insensitively.

        Returns:
            Matching groups; an empty mapping means the pattern matched nothing

        Raises:
            FilterCompileError: If the pattern does not compile
        """
        try:
            compiled = re.compile(pattern, re.IGNORECASE)
        except re.error as e:
            raise FilterCompileError(pattern, e)

        matched = {group_id: name for group_id, name in self.list_groups().items()
                   if compiled.search(name)}
        logger.info(f"Group pattern '{pattern}' matched {len(matched)} group(s)")
        return matched

    def members_of(self, group_id: str) -> List[Dict[str, Any]]:
        """
        Retrieve every member of a group, following ``next`` links.

        Pages are aggregated in request order. A page without a body or
        without a Link header ends the listing and is not aggregated, as
        does a failed request.
        """
        members = []
        uri = f"api/v1/groups/{quote(group_id)}/users?expand=manager"
        page = 0

        while uri:
            try:
                response = self.client.request(uri)
            except IdPError as e:
                logger.warning(f"Membership listing for group {group_id} stopped after {page} page(s): {e}")
                break

            link = response.header('link')
            if not link or not response.body:
                break

            page += 1
            if isinstance(response.body, list):
                members.extend(response.body)
            else:
                members.append(response.body)
            uri = parse_link_header(link).get('next')

        logger.debug(f"Group {group_id}: {len(members)} member(s) in {page} page(s)")
        return members

    def fetch_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Fetch one remote user with the manager expanded, None if unavailable."""
        try:
            response = self.client.request(f"api/v1/users/{quote(user_id)}?expand=manager")
        except IdPError as e:
            logger.error(f"Failed to fetch IdP user {user_id}: {e}")
            return None

        if not isinstance(response.body, dict) or not response.body.get('id'):
            logger.warning(f"IdP returned no usable user record for {user_id}")
            return None
        return response.body

    def member_choices(self, group_id: str) -> Dict[str, str]:
        """
        Members of a group as id -> label pairs for selection lists.

        The label is ``First Last (login)`` built from whatever profile fields exist.
        """
        choices = {}
        for user in self.members_of(group_id):
            user_id = user.get('id')
            if not user_id:
                continue
            profile = user.get('profile') or {}
            full_name = ' '.join(part for part in (profile.get('firstName'), profile.get('lastName')) if part)
            login = profile.get('login') or profile.get('email') or user_id
            choices[user_id] = f"{full_name} ({login})" if full_name else login
        return choices
