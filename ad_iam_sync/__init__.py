"""
AD/IAM Group Sync - Reconcile group memberships between Active Directory and AWS IAM.

One system is the source of truth for each run; the other is brought in line
with it according to a configured list of group mappings.
"""

__version__ = "1.0.0"
__author__ = "AD/IAM Sync Team"
