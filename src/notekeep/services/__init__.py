"""Services built on top of the notekeep storage layer."""
