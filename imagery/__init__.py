"""
Imagery — acquisition for change detection

- XYZ tiles over httpx, stitched into bbox mosaics with zoom-downgrade retry
- Whole-image previews cropped by item bbox (fallback path)
- STAC search (Planetary Computer) and Esri Wayback snapshot catalogs
- HTTP API: /health, /stac/search, /wayback/options, /change
"""
