"""interfaces/ — user-facing front ends."""
