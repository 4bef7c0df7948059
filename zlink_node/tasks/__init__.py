from zlink_node.tasks.sync_poller import SyncPoller, build_snapshot

__all__ = ['SyncPoller', 'build_snapshot']
