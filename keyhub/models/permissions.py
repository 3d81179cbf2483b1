from enum import Enum

class Permission(str, Enum):
    """Permissions scoped to the public key resource type.

    API tokens carry these literals in their ``scopes`` column; ``admin``
    acts as a wildcard and also lifts the owner restriction.
    """

    create = "PUBLIC_KEY_CREATE"
    access = "PUBLIC_KEY_ACCESS"   # read embedded private keys
    edit = "PUBLIC_KEY_EDIT"       # descriptive fields only
    remove = "PUBLIC_KEY_REMOVE"   # revoke
