"""Backend pieces of the HTTP file manager gateway.

Route handlers in server.py stay thin; the work lives here:
- path resolution confined to the storage root
- directory listing and login page rendering
- ZIP archives for multi-select downloads
- plain and AES-CBC encrypted uploads
- token sessions and the outward log sink

Security note:
The access token authorizes a client address for the life of the process,
and the upload key is handed to every browser that can load a listing.
Encrypted uploads therefore hide payloads from passive observers on the
network, not from anyone who can open the page.
"""
