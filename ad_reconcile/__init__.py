"""
AD Reconcile - Reconcile downstream identity and asset systems against Active Directory.

This package computes the differences between AD users or computers and a target
system (a GitHub organization via SCIM, or GLPI), plans corrective actions, and
applies them with dry-run support and a ceiling on changes per run.
"""

__version__ = "1.0.0"
__author__ = "AD Reconcile Team"
