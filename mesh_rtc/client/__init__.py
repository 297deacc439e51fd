"""Client side: room session, peer links and media."""
