import hmac
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import Body, Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse

from .config import settings
from .errors import InstallationValidationError, PermissionDenied, ServiceError
from .models import InstallationAcceptedResponse
from .services.daemon_client import DaemonClient
from .services.file_service import FilePurger
from .services.install_service import Actor, ModpackInstallService
from .services.orchestrator import InstallationOrchestrator
from .services.power_service import PowerObserver
from .services.profile_service import ProfileSwapOperator, locate_installer_profile
from .services.reinstall_service import ReinstallService
from .services.safety_net import RevertSafetyNet
from .storage import PanelStore


def build_install_service(store: PanelStore, daemon: DaemonClient) -> ModpackInstallService:
    orchestrator = InstallationOrchestrator(
        store=store,
        power=PowerObserver(daemon),
        purger=FilePurger(daemon),
        swapper=ProfileSwapOperator(store),
        reinstaller=ReinstallService(store, daemon),
        provision_installer=locate_installer_profile(store),
    )
    return ModpackInstallService(orchestrator, RevertSafetyNet(store))


store = PanelStore()
service = build_install_service(store, DaemonClient())


@asynccontextmanager
async def lifespan(app: FastAPI):
    store.init_db()
    yield


app = FastAPI(title="Modpack Installer", lifespan=lifespan)


def get_install_service() -> ModpackInstallService:
    return service


def get_actor(authorization: Optional[str] = Header(None)) -> Actor:
    token = ""
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
    if not settings.admin_token or not token:
        raise PermissionDenied("This action is unauthorized.", status_code=401)
    if not hmac.compare_digest(token.encode("utf-8"), settings.admin_token.encode("utf-8")):
        raise PermissionDenied("This action is unauthorized.")
    return Actor(id=0, username="admin", root_admin=True)


@app.exception_handler(InstallationValidationError)
def validation_error_handler(request: Request, exc: InstallationValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code, content={"detail": exc.message, "errors": exc.errors}
    )


@app.exception_handler(ServiceError)
def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.post(
    "/servers/{server_id}/modpacks/install",
    response_model=InstallationAcceptedResponse,
    status_code=202,
)
def install_modpack(
    server_id: int,
    payload: dict[str, Any] = Body(...),
    actor: Actor = Depends(get_actor),
    installer: ModpackInstallService = Depends(get_install_service),
) -> InstallationAcceptedResponse:
    return installer.install(server_id, payload, actor)
