"""Inbox Assistant Server

A local server that hosts:
- The streaming inference relay (prompt + email in, plain text out)
- The chat panel backend (per-email conversation histories, batch actions)
- Inbox browsing over Gmail (list, detail, batch delete)
- Health and configuration endpoints
"""
