import hashlib
import importlib.util
import logging
import sys
from pathlib import Path
from types import ModuleType
from typing import Callable, Optional

logger = logging.getLogger(__name__)


def module_name_for_path(module_path: Path) -> str:
    """
    Derives a stable module name for a tool file, so that two ``tools.py`` files in different directories do not
    replace each other in ``sys.modules``.
    """
    digest = hashlib.sha1(str(module_path).encode()).hexdigest()[:8]
    return f"colloquy_tool_{module_path.stem}_{digest}"


def load_module_from_path(module_path: Path, module_name: Optional[str] = None) -> ModuleType:
    """
    Imports a python file as a module. A file that was imported before is not executed again.

    :param module_path: Path of the python file.
    :param module_name: Name to register the module under, derived from the path if omitted.
    :return: The imported module.
    :raises FileNotFoundError: If the file does not exist.
    """
    module_path = Path(module_path).resolve()
    if not module_path.is_file():
        raise FileNotFoundError(f"Tool module '{module_path}' not found.")

    module_name = module_name or module_name_for_path(module_path)
    if module_name in sys.modules:
        return sys.modules[module_name]

    logger.info(f"Loading tool module {module_path.name} as {module_name}")

    spec = importlib.util.spec_from_file_location(module_name, module_path)
    if spec is None or spec.loader is None:
        raise ImportError(f"Cannot import '{module_path}' as a python module")

    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except Exception:
        del sys.modules[module_name]
        raise

    return module


def load_callable(module_path: Path, function_name: str) -> Callable:
    """
    Looks up a function in a python file.

    :raises ImportError: If the module has no callable of that name.
    """
    func = getattr(load_module_from_path(module_path), function_name, None)
    if not callable(func):
        raise ImportError(f"Could not load '{function_name}' from '{Path(module_path).name}'")
    return func
