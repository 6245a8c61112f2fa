"""
Inscriber service - block-driven inscription contest.

This service handles:
1. Following the chain tip block by block
2. Running the leader/survival competition over proposal votes
3. Creating, paying for and reconciling inscription orders
4. Operator status and admin actions over HTTP
"""
