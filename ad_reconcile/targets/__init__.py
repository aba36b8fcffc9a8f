"""
Target system integrations.

Each module defines one TargetAPIBase subclass; the orchestrator loads the module
named by a reconciliation's ``target.module`` setting.
"""
