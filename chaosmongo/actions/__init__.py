"""
Chaos 'actions' module.

This module contains *actions* that modify the state of a MongoDB replica set:
stop, kill, pause or partition a member, bring it back, step down the primary,
initiate the replica set.

*Actions* block until the change has taken effect at the Docker level and
report success as a bool. They never raise for a failed docker command; the
failure is logged and False is returned. Raising is left to the caller (see
chaosmongo.control).

Every disruption is recorded in the 'disrupted_members' state file kept in
the chaos temp dir, so a later process can put the replica set back together
even if the one that disrupted it died.

Things to consider when adding or modifying *actions*:
1. *Actions* and Probes could/may be used outside of scenarios for other
   kinds of integration or systems testing. Therefore, *actions* should
   be written in a way they can reused outside of the context of the
   chaosmongo scenarios.
2. A disruption that cannot be undone by restore_member is a bug.
"""
