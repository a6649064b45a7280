"""
AD User Info - Look up Active Directory users and export them to Excel.

This package wraps an Active Directory domain behind a single service class,
normalizing directory entries into flat user records.
"""

__version__ = "1.0.0"
__author__ = "AD User Info Team"
