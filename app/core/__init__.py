"""
AI Proxy Functions - Core Module

Shared building blocks for the callable endpoints:
- Layered configuration and provider credentials
- Callable error kinds and the wire protocol
- Request validation and LLM response repair
- The vendor HTTP client and daily quotas
- Temporary API tokens
"""
