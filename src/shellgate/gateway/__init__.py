"""Shellgate gateway: conversation stores and the exposed service operations."""
