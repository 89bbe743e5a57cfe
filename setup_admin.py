"""
Script to set the administrator password.
Run this after installing to replace the default password ('admin').
Usage: python setup_admin.py [new-password]
"""

import getpass
import sys
from dataclasses import replace

from auth import hash_password
from database.db import get_store


def setup_admin(password):
    """Store a bcrypt hash of the password as the administrator password."""
    store = get_store()
    store.save_settings(replace(store.settings, adminPassword=hash_password(password)))
    store.teardown()


if __name__ == '__main__':
    password = sys.argv[1] if len(sys.argv) > 1 else getpass.getpass('New administrator password: ')
    if len(password) < 4:
        print("Error: the password must be at least 4 characters.")
        sys.exit(1)
    setup_admin(password)
    print("Administrator password updated successfully!")
    print("Teacher passwords can be changed in Settings after logging in.")
