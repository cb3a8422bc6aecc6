"""
Case Workflow Engine

Workflow automation for whistleblowing case management: rule-based
assignment, SLA deadlines with breach tracking, and audited escalation.
"""

__version__ = "1.0.0"
