"""Parley — real-time negotiation and presence for the labor marketplace.

The coordination layer between work requesters and workers: who is
reachable right now, live wage bargaining over persistent connections,
and job-match notification fan-out.
"""

__version__ = "0.1.0"
