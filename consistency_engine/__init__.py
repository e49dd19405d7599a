"""
Consistency Engine - Loan Document Graph, Drift & Reconciliation
================================================================

A service for loan-document workspaces:
1. Projecting clauses and variables into a weighted relationship graph
2. Detecting and resolving drift from approved baselines
3. Reconciling incoming markups (PDF/DOCX) via an AI parser

Every state change is recorded in an append-only audit trail.
"""

__version__ = "1.0.0"
