import importlib.metadata


def _get_version() -> str:
    try:
        return importlib.metadata.version("zipkinproxy")
    except importlib.metadata.PackageNotFoundError:
        return "dev"
