"""
Uyuni LDAP Sync - Synchronize user accounts and roles from LDAP into an Uyuni server.

This package reads group and organizational role membership from an LDAP
directory and creates, updates or removes the matching Uyuni users and their
roles over the Uyuni XML-RPC API.
"""

__version__ = "1.0.0"
__author__ = "Uyuni LDAP Sync Team"
