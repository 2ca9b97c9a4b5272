"""
DP Admin module.

Operator command line (dp-admin) for assignments and submissions.
"""
