"""Organization directory consulted by billing: orgs, users and their memberships."""
