"""Project scaffolding for `absbuild init`.

Creates abs.json and a starter src/main.cpp for the chosen output type.
"""

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional

from .config.project_config import PROJECT_FILE_NAME, OutputType, ProjectConfig, ProjectConfigError
from .packages.platform_utils import Platform

DEFAULT_CXX_OPTIONS = {"rtti": False, "async_await": True, "standard": "c++20"}

GUI_LINK_LIBRARIES = ["user32.lib", "comctl32.lib"]

CONSOLE_TEMPLATE = """#include <stdio.h>

int main() {
    printf("Hello, world!\\n");
    return 0;
}
"""

GUI_TEMPLATE = """#include <windows.h>
#include <commctrl.h>

LRESULT CALLBACK WindowProc(HWND hwnd, UINT msg, WPARAM wParam, LPARAM lParam) {
    switch (msg) {
    case WM_DESTROY:
        PostQuitMessage(0);
        return 0;
    case WM_PAINT: {
        PAINTSTRUCT ps;
        HDC hdc = BeginPaint(hwnd, &ps);
        FillRect(hdc, &ps.rcPaint, (HBRUSH)(COLOR_WINDOW + 1));
        EndPaint(hwnd, &ps);
        return 0;
    }
    }
    return DefWindowProc(hwnd, msg, wParam, lParam);
}

int WINAPI wWinMain(HINSTANCE hInstance, HINSTANCE, PWSTR, int nCmdShow) {
    InitCommonControls();

    const wchar_t CLASS_NAME[] = L"__NAME__ Window Class";
    WNDCLASS wc = {};
    wc.lpfnWndProc = WindowProc;
    wc.hInstance = hInstance;
    wc.hCursor = LoadCursor(nullptr, IDC_ARROW);
    wc.lpszClassName = CLASS_NAME;
    RegisterClass(&wc);

    HWND hwnd = CreateWindowEx(
        0, CLASS_NAME, L"__NAME__", WS_OVERLAPPEDWINDOW,
        CW_USEDEFAULT, CW_USEDEFAULT, CW_USEDEFAULT, CW_USEDEFAULT,
        nullptr, nullptr, hInstance, nullptr);
    if (hwnd == nullptr) {
        return 0;
    }
    ShowWindow(hwnd, nCmdShow);

    MSG msg = {};
    while (GetMessage(&msg, nullptr, 0, 0) > 0) {
        TranslateMessage(&msg);
        DispatchMessage(&msg);
    }
    return 0;
}
"""

DLL_TEMPLATE = """#include <windows.h>

BOOL WINAPI DllMain(HINSTANCE hinstDLL, DWORD fdwReason, LPVOID lpReserved) {
    return TRUE;
}
"""

STATIC_LIBRARY_TEMPLATE = """int add(int a, int b) {
    return a + b;
}
"""

TEMPLATES: Dict[OutputType, str] = {
    OutputType.CONSOLE_APP: CONSOLE_TEMPLATE,
    OutputType.GUI_APP: GUI_TEMPLATE,
    OutputType.DYNAMIC_LIBRARY: DLL_TEMPLATE,
    OutputType.STATIC_LIBRARY: STATIC_LIBRARY_TEMPLATE,
}


def default_link_libraries(output_type: OutputType) -> List[str]:
    return list(GUI_LINK_LIBRARIES) if output_type is OutputType.GUI_APP else []


def init_project(
    project_dir: Path,
    output_type: OutputType = OutputType.CONSOLE_APP,
    name: Optional[str] = None,
) -> ProjectConfig:
    """Create a new project.

    Args:
        project_dir: Directory to create the project in (created if missing)
        output_type: Kind of artifact the project builds
        name: Project name (default: the directory name)

    Returns:
        The ProjectConfig that was written

    Raises:
        ProjectConfigError: If the directory already holds a project
    """
    project_dir = Path(project_dir).resolve()
    config_path = project_dir / PROJECT_FILE_NAME
    if config_path.is_file():
        raise ProjectConfigError(f"An absbuild project already exists in {project_dir}.")

    project_dir.mkdir(parents=True, exist_ok=True)
    config = ProjectConfig.from_dict(
        {
            "name": name or project_dir.name,
            "cxx_options": dict(DEFAULT_CXX_OPTIONS),
            "output_type": output_type.value,
            "link_libraries": default_link_libraries(output_type),
            "supported_targets": [p.value for p in Platform],
            "dependencies": [],
        },
        project_dir,
    )

    with open(config_path, "w", encoding="utf-8") as f:
        json.dump(config.to_dict(), f, indent=2)
        f.write("\n")

    main_cpp = config.src_path / "main.cpp"
    if main_cpp.exists():
        logging.info(f"Keeping existing {main_cpp}")
    else:
        main_cpp.parent.mkdir(parents=True, exist_ok=True)
        with open(main_cpp, "w", encoding="utf-8") as f:
            f.write(TEMPLATES[output_type].replace("__NAME__", config.name))

    logging.info(f"Initialized {output_type.value} project '{config.name}' in {project_dir}")
    return config
