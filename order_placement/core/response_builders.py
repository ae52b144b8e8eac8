from typing import List
from order_placement.models.order import Order
from order_placement.models.two_factor_challenge import TwoFactorChallenge
from order_placement.schemas.order import OrderItemOut, OrderOut, PlacementStatusOut, VerificationOut
from order_placement.schemas.two_factor import ChallengeOut


def build_order_response(order: Order) -> OrderOut:
    return OrderOut(
        id=order.id,
        supplier_id=order.supplier_id,
        supplier_name=order.supplier.name,
        batch_id=order.batch_id,
        status=order.status,
        verification_status=order.verification_status,
        verification_error=order.verification_error,
        subtotal=order.subtotal,
        total_amount=order.total_amount,
        verified_total=order.verified_total,
        price_change_amount=order.price_change_amount,
        confirmation_number=order.confirmation_number,
        delivery_date=order.delivery_date,
        error_message=order.error_message,
        items=[
            OrderItemOut(
                id=item.id,
                supplier_sku=item.supplier_sku,
                name=item.name,
                quantity=item.quantity,
                unit_price=item.unit_price,
                line_total=item.line_total,
                verified_price=item.verified_price,
                status=item.status,
                notes=item.notes,
            )
            for item in order.items
        ],
        created_at=order.created_at,
        updated_at=order.updated_at,
    )


def build_order_response_list(orders: list) -> List[OrderOut]:
    return [build_order_response(order) for order in orders]


def build_placement_status(order: Order) -> PlacementStatusOut:
    return PlacementStatusOut(
        processing=order.processing,
        status=order.status,
        confirmation_number=order.confirmation_number,
        total_amount=order.total_amount,
        error_message=order.error_message,
    )


def build_verification_response(order: Order) -> VerificationOut:
    return VerificationOut(
        order_id=order.id,
        status=order.status,
        verification_status=order.verification_status,
        verified_total=order.verified_total,
        price_change_amount=order.price_change_amount,
        error=order.verification_error,
    )


def build_challenge_response(challenge: TwoFactorChallenge) -> ChallengeOut:
    return ChallengeOut(
        session_token=challenge.session_token,
        supplier_name=challenge.credential.supplier.name,
        request_type=challenge.request_type,
        two_fa_type=challenge.two_fa_type,
        prompt_message=challenge.prompt_message,
        status=challenge.status,
        attempts=challenge.attempts,
        attempts_remaining=challenge.attempts_remaining(),
        expires_at=challenge.expires_at,
        time_remaining=challenge.time_remaining(),
        order_id=challenge.order_id,
    )
