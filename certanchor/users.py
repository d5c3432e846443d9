"""User directory backed by a Cognito user pool.

Issuer capability is membership in the issuer group; every other user is
reported as belonging to ``users``.
"""

import logging
from typing import Dict, List, Optional, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .config import Settings
from .errors import DirectoryError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_GROUP = "users"


class IdentityProvider(Protocol):
    def list_users(self) -> List[Dict[str, str]]: ...

    def create_user(self, email: str, password: str, name: Optional[str] = None, issuer: bool = False) -> None: ...

    def set_issuer(self, username: str, issuer: bool) -> None: ...

    def change_group(self, username: str, group: str) -> bool: ...

    def count_users(self) -> int: ...


class CognitoDirectory:
    """Admin operations on a Cognito user pool."""

    def __init__(self, client, user_pool_id: str, issuer_group: str = "issuers"):
        self.client = client
        self.user_pool_id = user_pool_id
        self.issuer_group = issuer_group

    @classmethod
    def from_settings(cls, settings: Settings) -> "CognitoDirectory":
        settings.require("user_pool_id", "aws_region")
        client = boto3.client(
            "cognito-idp",
            region_name=settings.aws_region,
            config=Config(
                connect_timeout=settings.request_timeout,
                read_timeout=settings.request_timeout,
            ),
        )
        return cls(client, settings.user_pool_id, settings.issuer_group)

    def list_users(self):
        users = []
        for user in self._iter_users():
            attributes = {a["Name"]: a["Value"] for a in user.get("Attributes", [])}
            groups = self.groups_for(user["Username"])
            users.append({
                "username": user["Username"],
                "email": attributes.get("email", ""),
                "group": self.issuer_group if self.issuer_group in groups else DEFAULT_GROUP,
            })
        return users

    def count_users(self):
        return sum(1 for _ in self._iter_users())

    def groups_for(self, username: str) -> List[str]:
        response = self._call(
            "admin_list_groups_for_user",
            UserPoolId=self.user_pool_id,
            Username=username,
        )
        return [group["GroupName"] for group in response.get("Groups", [])]

    def create_user(self, email, password, name=None, issuer=False):
        if not email or not password:
            raise ValidationError("Email, password are required")

        attributes = [
            {"Name": "email", "Value": email},
            {"Name": "email_verified", "Value": "true"},
        ]
        if name:
            attributes.append({"Name": "name", "Value": name})

        self._call(
            "admin_create_user",
            UserPoolId=self.user_pool_id,
            Username=email,
            TemporaryPassword=password,
            MessageAction="SUPPRESS",
            UserAttributes=attributes,
        )
        self._call(
            "admin_set_user_password",
            UserPoolId=self.user_pool_id,
            Username=email,
            Password=password,
            Permanent=True,
        )
        if issuer:
            self.set_issuer(email, True)
        logger.info("Created user %s (issuer=%s)", email, issuer)

    def set_issuer(self, username, issuer):
        operation = "admin_add_user_to_group" if issuer else "admin_remove_user_from_group"
        self._call(
            operation,
            UserPoolId=self.user_pool_id,
            Username=username,
            GroupName=self.issuer_group,
        )

    def change_group(self, username, group):
        """Move a user between ``users`` and the issuer group.

        Returns:
            False if the user was already in the requested group
        """
        if not username or not group:
            raise ValidationError("Username and group are required")
        if group not in (self.issuer_group, DEFAULT_GROUP):
            raise ValidationError(f"group must be '{self.issuer_group}' or '{DEFAULT_GROUP}'")

        wants_issuer = group == self.issuer_group
        if (self.issuer_group in self.groups_for(username)) == wants_issuer:
            return False
        self.set_issuer(username, wants_issuer)
        return True

    # --- internals ---

    def _iter_users(self):
        paginator = self.client.get_paginator("list_users")
        try:
            for page in paginator.paginate(UserPoolId=self.user_pool_id):
                yield from page.get("Users", [])
        except (ClientError, BotoCoreError) as e:
            raise DirectoryError(f"Error fetching users: {e}") from e

    def _call(self, operation: str, **params):
        try:
            return getattr(self.client, operation)(**params)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code == "UserNotFoundException":
                raise NotFoundError(f"User not found: {params.get('Username')}") from e
            if code in ("UsernameExistsException", "InvalidPasswordException", "InvalidParameterException"):
                raise ValidationError(e.response["Error"].get("Message", code)) from e
            logger.error("Cognito %s failed: %s", operation, e)
            raise DirectoryError(f"User directory request failed: {e}") from e
        except BotoCoreError as e:
            raise DirectoryError(f"User directory request failed: {e}") from e
