"""Background workers: controller, event watcher, leader election and the sync job."""
