"""
Scheduler service.

Background worker that pulls email jobs from a priority and a regular
queue, delivers them through the configured provider, and retries or
dead-letters failures.
"""

__version__ = "0.1.0"
