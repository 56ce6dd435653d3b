"""
HTTP API for projects, tasks, batches and provider webhooks.
"""
