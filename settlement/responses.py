from fastapi.responses import JSONResponse

from settlement.utils import calculate_pagination


def success_response(data=None, message: str = "OK", status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": True, "message": message, "data": data})


def error_response(message: str, status_code: int = 400) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message, "error": message})


def paginated_response(data, page: int, limit: int, total: int, message: str = "OK") -> JSONResponse:
    return JSONResponse(content={
        "success": True,
        "message": message,
        "data": data,
        "pagination": calculate_pagination(page, limit, total),
    })
