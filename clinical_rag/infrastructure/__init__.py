"""Infrastructure layer for Clinical-RAG.

Configuration, logging, encryption and audit components. Nothing in the domain
layer imports from here.
"""
