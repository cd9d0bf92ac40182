"""
cherishly_sync - people and moment synchronization between Cherishly and a
paired peer application (Temerio).

Pairs two accounts with a short-lived code, lets the user map local people
to remote people, and exchanges HMAC-signed event batches with
last-write-wins conflict detection.
"""

__version__ = "0.4.0"
