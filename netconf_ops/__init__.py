"""netconf-ops: Parallel NETCONF operations over SSH.

Runs the same NETCONF operation against a fleet of network devices
concurrently, dialing each device directly or through the jump host
named by the user's SSH client configuration.

Subcommands::

    netconf-ops get -i hosts.txt -f filters.xml     # get with subtree filters
    netconf-ops get-config --host 192.0.2.1 --save  # fetch running config
    netconf-ops edit-config -i hosts.txt -f rpc/    # lock, edit, commit
    netconf-ops copy-config -s running -t startup   # copy datastore
    netconf-ops dispatch -f rpc.xml --lock          # user-defined RPC
    netconf-ops notification -s NETCONF -d 1h       # event subscription

See Also:
    RFC 6241, RFC 5277
"""

__version__ = "0.3.0"
