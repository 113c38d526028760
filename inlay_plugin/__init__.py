"""Host-side services for the EDMC Web Overlay plugin."""
