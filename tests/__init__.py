"""Data broker test suite.

Unit tests live in tests/unit/, one module per library module:
- test_query.py / test_translate.py: predicate evaluation and native/residual split
- test_constraints.py: satisfiability pruning and requirement validation
- test_merge.py: identity-key merging, conflicts and provenance
- test_broker.py: federation rounds, timeouts, degraded sources and submissions
- test_rest_connector.py: REST connector over httpx.MockTransport

Shared record fixtures (books from a library and a PDF archive) are in conftest.py.
"""
