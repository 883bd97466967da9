"""
Attribute name remapping for directories with non-standard schemas.
"""

from typing import Dict, Optional


class AttributeMapper:
    """
    Resolves canonical attribute names ("uid", "mail", "name", "givenName",
    "sn") to the attribute names used under a given base DN.

    The map has the shape ``{base_dn: {canonical_name: directory_name}}``.
    Anything not listed resolves to the canonical name itself.
    """

    def __init__(self, attrmap: Optional[Dict[str, Dict[str, str]]] = None):
        self._attrmap = {dn: dict(fields or {}) for dn, fields in (attrmap or {}).items()}

    def resolve(self, base_dn: str, canonical_name: str) -> str:
        fields = self._attrmap.get(base_dn)
        if fields and canonical_name in fields:
            return fields[canonical_name]
        return canonical_name
