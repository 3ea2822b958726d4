"""
Hierarchy chain module.

Versioned hierarchy documents per business entity (company / project / location):
- Drafts are revised by branching new versions (v0, v1, ...) off an existing one
- Approving a version archives every other version of its chain
- Nothing is deleted; retired versions stay as `archived`
- Meaningful actions are recorded to the append-only audit trail
"""
