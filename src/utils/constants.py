# Các quyền được phép xem dữ liệu bảo mật (thống kê, sự kiện, uy tín IP)
HIGH_PRIVILEGE_LIST = ["Admin", "Boss"]
