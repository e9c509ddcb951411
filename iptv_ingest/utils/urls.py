import urllib.parse


def normalize_base_url(url: str, port: int | None = None) -> str:
    """
    Reduce a user-entered provider address to scheme://host[:port]/path

    Adds a missing scheme, applies an explicit port, and strips trailing
    portal entry files (portal.php, load.php, player_api.php) and slashes.
    """
    url = url.strip()
    if not url:
        return url
    parsed = urllib.parse.urlparse(url)
    if not parsed.scheme:
        parsed = urllib.parse.urlparse("http://" + url)

    netloc = parsed.netloc
    if port and parsed.port is None:
        netloc = f"{parsed.hostname}:{port}"

    path = parsed.path or ""
    for entry in ("portal.php", "load.php", "player_api.php", "get.php"):
        if path.endswith(entry):
            path = path.rsplit("/", 1)[0]
            break

    rebuilt = urllib.parse.urlunparse((parsed.scheme, netloc, path.rstrip("/"), "", "", ""))
    return rebuilt.rstrip("/")
