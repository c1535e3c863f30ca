"""Configuration, logging, metrics and utilities shared by nfsquota."""
