import importlib
import logging
import pkgutil
from collections.abc import Iterable

__all__ = ["discover_modules"]

logger = logging.getLogger(__name__)


def discover_modules(package_names: Iterable[str]) -> list[str]:
    """Import every module of the given packages so their registry decorators run.

    Returns the names of the modules that were imported. Modules that fail to
    import are logged and skipped.
    """
    imported: list[str] = []
    for package_name in package_names:
        imported.extend(_import_package_modules(package_name))
    return imported


def _import_package_modules(package_name: str) -> list[str]:
    """Import a package and all of its submodules."""
    try:
        package = importlib.import_module(package_name)
    except ImportError as err:
        logger.warning("Error importing package %s: %s", package_name, err)
        return []

    imported = [package.__name__]
    # Plain modules have no __path__ and nothing to walk
    search_path = getattr(package, "__path__", None)
    if search_path is None:
        return imported

    for _, module_name, _ in pkgutil.walk_packages(search_path, package.__name__ + "."):
        try:
            importlib.import_module(module_name)
        except ImportError as err:
            logger.warning("Error importing module %s: %s", module_name, err)
            continue
        imported.append(module_name)
    logger.debug("Discovered modules: %s", ", ".join(imported))
    return imported
