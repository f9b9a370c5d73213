"""pr-rally: an automated review/fix loop over a pull request.

A reviewer agent critiques the PR, a reviewee agent applies fixes, and the
orchestrator alternates between them until the reviewer approves, the
iteration cap is hit, a human aborts, or an agent fails.
"""

__version__ = "0.1.0"
