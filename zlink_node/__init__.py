# zlink_node - daemon supervision, RPC and state polling for the zlink client
__version__ = "1.0.0"
