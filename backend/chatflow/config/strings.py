# /chatflow/config/strings.py

# This file contains all user-facing strings sent by the flow interpreter,
# making them easy to manage and localize without changing engine logic.

# Interpreter fallbacks
NOT_UNDERSTOOD = '❌ No entendí. Escribe "hola" o "menú" para ver las opciones.'
CONVERSATION_RESTARTED = "🔄 El flujo de la conversación cambió, así que empezamos de nuevo."
FLOW_UNAVAILABLE = "⚠️ Tu sesión expiró o el flujo ya no existe. Escribe 'hola' para empezar de nuevo."
TARGET_FLOW_NOT_FOUND = "⚠️ Error: flujo destino no encontrado."
GENERIC_ERROR = '⚠️ Ocurrió un error. Escribí "cancelar" para reiniciar.'
COLLABORATOR_ERROR = "😔 Lo sentimos, no pudimos completar la operación. Intentá de nuevo en un momento."

# Poll
POLL_DEFAULT_QUESTION = "¿Qué opción elegís?"
POLL_FOOTER = "_Respondé con el número de tu elección._"
POLL_NOT_UNDERSTOOD = "🤔 No reconocí esa opción."

# Catalog
CATALOG_HEADER = "📋 *NUESTRO MENÚ:*"
CATALOG_EMPTY = "⚠️ Lo sentimos, el catálogo está vacío en este momento."
CATALOG_HOW_TO_ORDER = (
    "📝 *Cómo pedir:*\nEscribe tu pedido, por ejemplo:\n"
    "_\"2 hamburguesas clásicas y 1 coca\"_"
)
CATALOG_NOTHING_PARSED = "🤔 No reconocí ningún producto. Probá de nuevo, por ejemplo: _\"2 coca cola\"_"
CATALOG_PARSED_HEADER = "📝 Anoté:"

# Delivery slots
SLOT_HEADER = "⏰ *Elegí tu horario de entrega:*"
SLOT_FOOTER = "_Respondé con el número de tu opción._"
SLOT_NOT_UNDERSTOOD = "🤔 No reconocí ese horario."
SLOT_SELECTED = "✅ Horario reservado: *{slot}*"
SLOTS_EMPTY = "⚠️ No tenemos horarios de entrega disponibles por el momento. Escribí cualquier mensaje para volver a consultar."

# Stock check
STOCK_DEFAULT_QUESTION = (
    '🔍 ¿Qué producto querés consultar? Escribí el nombre y la cantidad (ej: "5 hamburguesas").'
)
STOCK_NOT_FOUND = '❌ No encontré *"{query}"* en nuestros productos.'
STOCK_SOLD_OUT = "😔 *{name}* está agotado en este momento."
STOCK_AVAILABLE = "✅ *{name}*\n📦 Stock disponible\n💰 Precio: ${price} c/u"
STOCK_AVAILABLE_TOTAL = "\n🛒 {qty}x = ${total}"
STOCK_INSUFFICIENT = "⚠️ *{name}*: solo quedan *{stock}* (pediste {qty})\n💰 Precio: ${price} c/u"

# Cart
CART_NO_PRODUCT = "⚠️ No hay producto seleccionado. Volvé a consultar el stock."
CART_INVALID_QTY = "⚠️ La cantidad tiene que ser un número mayor a cero."
CART_ADDED = "✅ Agregado: *{qty}x {name}* — ${line_total}\n🛒 Carrito: {count} {items} — Total: *${total}*"
CART_EMPTY = "🛒 Tu carrito está vacío. Volvé a intentar."
SUMMARY_HEADER = "🛒 *Resumen de tu pedido:*"
SUMMARY_LINE = "• {qty}x {name} — ${line_total}"
SUMMARY_TOTAL = "*Total: ${total}*"

# Orders
ORDER_CONFIRMED = "✅ *¡Pedido confirmado!*\nOrden: #{order_number}\nTotal: *${total}*\nDestino: {address}"
ORDER_PICKUP = "Retiro en local"
ORDER_FAILED = "❌ No pudimos registrar tu pedido. Respondé cualquier mensaje para reintentar."

# Media / documents
MEDIA_DEFAULT_REQUEST = "📸 Por favor, envía la imagen o documento."
MEDIA_RECEIVED = "✅ Archivo recibido correctamente."
DOCUMENT_DEFAULT_CAPTION = "Aquí tienes tu comprobante."
DOCUMENT_FAILED = "⚠️ Hubo un error generando el comprobante."

# Thread control / handover
THREAD_PAUSED = "⏳ Te estamos transfiriendo con un humano. Por favor espera."
THREAD_RESUMED = "🤖 El bot ha retomado la conversación."
HANDOVER_DEFAULT = "Te estamos transfiriendo con un asesor humano. Por favor, aguarda un momento."
HANDOVER_DEFAULT_REASON = "Solicitud de usuario"

# Claims
CLAIM_CREATED = "✅ Tu reporte ha sido registrado exitosamente. Nos pondremos en contacto pronto."
CLAIM_FAILED = "⚠️ Hubo un error al registrar tu reporte. Por favor intenta más tarde."
CLAIM_NO_DESCRIPTION = "Sin descripción"
