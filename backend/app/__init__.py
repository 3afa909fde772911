"""Credit ledger and job lifecycle backend for the video generation pipeline."""
