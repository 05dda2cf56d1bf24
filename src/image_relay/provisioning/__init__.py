"""Disposable provider account provisioning via a temporary mailbox."""
