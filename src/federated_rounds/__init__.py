"""
Top-level package for the federated_rounds project.

The ledger collaborator lives under `federated_rounds.ledger`; the round
coordination core (submissions, aggregates, tokens, key escrow) lives under
`federated_rounds.round_exchange`.
"""

__all__: list[str] = []
