"""
Teams module.

- Teams, team roles and role assignments
- Join requests (user -> team) and invites (team -> user)
- Approving/accepting one pending item places the user in the team and closes
  every other pending item of that user in the same transaction
- Every transition is recorded to the append-only audit trail
"""
