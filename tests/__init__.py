"""
Onionize Test Suite

Security-critical tests that MUST pass before any release.

Priority:
1. Capability gate tests (slug matching, connection reset, redirects)
2. Content exposure tests (single file, traversal)
3. Identity derivation tests
4. Lifecycle and end-to-end tests
"""
import logging

# Configure test logging
logging.basicConfig(
    level=logging.DEBUG,
    format='%(asctime)s | %(levelname)-8s | %(name)s | %(message)s'
)
