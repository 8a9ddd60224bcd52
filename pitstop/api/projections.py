"""Compact representations of related records embedded in API responses"""
from pitstop.models import Booking, InventoryItem, User, Vehicle
from pitstop.utils.pagination import decimal_to_float


def user_summary(user: User) -> dict:
    if user is None:
        return None
    summary = {
        "id": user.id,
        "user_code": user.user_code,
        "email": user.email,
        "role": user.role,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "full_name": user.full_name,
        "phone_number": user.phone_number,
    }
    if user.is_employee:
        summary["employee_id"] = user.employee_id
        summary["department"] = user.department
    return summary


def vehicle_summary(vehicle: Vehicle) -> dict:
    if vehicle is None:
        return None
    return {
        "id": vehicle.id,
        "vehicle_code": vehicle.vehicle_code,
        "registration_number": vehicle.registration_number,
        "make": vehicle.make,
        "model": vehicle.model,
        "year": vehicle.year,
    }


def booking_summary(booking: Booking) -> dict:
    if booking is None:
        return None
    return {
        "id": booking.id,
        "booking_code": booking.booking_code,
        "service_type": booking.service_type,
        "scheduled_date": booking.scheduled_date,
        "time_slot": booking.time_slot,
        "status": booking.status,
    }


def item_summary(item: InventoryItem) -> dict:
    if item is None:
        return None
    return {
        "id": item.id,
        "item_code": item.item_code,
        "name": item.name,
        "category": item.category,
        "unit": item.unit,
        "unit_price": decimal_to_float(item.unit_price),
        "current_stock": item.current_stock,
        "reserved_stock": item.reserved_stock,
        "is_low_stock": item.is_low_stock,
    }
