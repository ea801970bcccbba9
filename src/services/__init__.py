"""Analyzers, model routing and learning services.

Import concrete services from their modules; nothing is re-exported here so
importing one analyzer does not pull in boto3 or httpx.
"""
