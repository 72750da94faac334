"""Clients for hosted model, embedding and search services."""
