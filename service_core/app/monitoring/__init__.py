"""
Monitoring package.

Metric history, the alert lifecycle and the notification channel alerts
publish into, plus the periodic health checks and timers around them.
"""
