"""Core realtime messaging library for the BaatKare chat backend."""
